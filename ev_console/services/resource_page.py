from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from ev_console.domain.models import Notice, NoticeLevel, PageState, Session
from ev_console.domain.state_machine import (
    DialogState,
    InvalidTransitionError,
    LoadState,
    can_dialog_transition,
    can_load_transition,
)
from ev_console.infra.storage import BrowserStorage, StorageError
from ev_console.services.gateway import ApiGateway, GatewayError
from ev_console.services.resources import (
    FormValidationError,
    ResourceDefinition,
    build_payload,
    field_value,
    form_initial_values,
)

logger = logging.getLogger(__name__)

PAGE_STATE_KEY = "evsc:page"
DIALOG_CREATE = "create"
DIALOG_EDIT = "edit"


class ActionNotAllowedError(Exception):
    pass


class RecordNotFoundError(LookupError):
    pass


@dataclass
class FormDialog:
    mode: str
    values: dict[str, str]
    record_id: str | None = None
    state: DialogState = DialogState.OPEN
    error: str | None = None
    field_errors: dict[str, str] = field(default_factory=dict)

    def move(self, target: DialogState) -> None:
        if not can_dialog_transition(self.state, target):
            raise InvalidTransitionError(f"dialog cannot move from {self.state} to {target}")
        self.state = target

    @property
    def is_open(self) -> bool:
        return self.state != DialogState.CLOSED


@dataclass
class ConfirmDialog:
    record_id: str
    title: str
    state: DialogState = DialogState.OPEN
    error: str | None = None

    def move(self, target: DialogState) -> None:
        if not can_dialog_transition(self.state, target):
            raise InvalidTransitionError(f"confirmation cannot move from {self.state} to {target}")
        self.state = target


def pagination_window(current: int, total: int, delta: int = 1) -> list[int | None]:
    """Page numbers for the pagination strip; ``None`` marks an ellipsis.

    The first and last pages are always present together with ``delta``
    neighbours of the current page. A gap of exactly one page is filled in
    instead of being elided.
    """
    if total < 1:
        return []
    kept = [
        number
        for number in range(1, total + 1)
        if number in (1, total) or current - delta <= number <= current + delta
    ]
    window: list[int | None] = []
    previous: int | None = None
    for number in kept:
        if previous is not None:
            if number - previous == 2:
                window.append(previous + 1)
            elif number - previous != 1:
                window.append(None)
        window.append(number)
        previous = number
    return window


class PageStateStore:
    def __init__(self, storage: BrowserStorage) -> None:
        self._storage = storage

    def load(self, resource: str) -> PageState | None:
        try:
            raw = self._storage.get_item(PAGE_STATE_KEY)
        except StorageError:
            logger.warning("page state storage unavailable")
            return None
        if not raw:
            return None
        try:
            state = PageState.model_validate_json(raw)
        except (ValidationError, ValueError):
            return None
        if state.resource != resource:
            return None
        return state

    def save(self, state: PageState) -> None:
        self._storage.set_item(PAGE_STATE_KEY, state.model_dump_json())

    def clear(self) -> None:
        self._storage.remove_item(PAGE_STATE_KEY)


class ResourcePage:
    def __init__(
        self,
        definition: ResourceDefinition,
        gateway: ApiGateway,
        session: Session | None,
        state: PageState | None = None,
        *,
        limit: int = 20,
    ) -> None:
        self.definition = definition
        self._gateway = gateway
        self._session = session
        if state is None or state.resource != definition.key:
            state = PageState(resource=definition.key, limit=limit)
        self.state = state

    @property
    def items(self) -> list[dict[str, Any]]:
        return self.state.items

    @property
    def can_create(self) -> bool:
        return self.definition.can_create(self._session)

    @property
    def can_edit(self) -> bool:
        return self.definition.can_edit(self._session)

    @property
    def can_delete(self) -> bool:
        return self.definition.can_delete(self._session)

    def _move(self, target: LoadState) -> None:
        if not can_load_transition(self.state.load_state, target):
            raise InvalidTransitionError(f"page cannot move from {self.state.load_state} to {target}")
        self.state.load_state = target

    def notify(self, level: NoticeLevel, title: str, message: str = "") -> None:
        self.state.notices.append(Notice(level=level, title=title, message=message))

    def take_notices(self) -> list[Notice]:
        notices = list(self.state.notices)
        self.state.notices.clear()
        return notices

    def load(self, page: int | None = None) -> bool:
        target_page = max(1, page if page is not None else self.state.current_page)
        self._move(LoadState.LOADING)
        try:
            result = self._gateway.list_records(
                self.definition.path,
                page=target_page,
                limit=self.state.limit,
                list_key=self.definition.list_key,
            )
        except GatewayError as exc:
            self._move(LoadState.ERROR)
            self.notify(NoticeLevel.ERROR, f"Could not load {self.definition.label.lower()}", exc.message)
            return False

        self.state.items = list(result.items)
        self.state.total_items = result.total
        self.state.current_page = target_page
        self._move(LoadState.SUCCESS)
        return True

    def change_page(self, page: int) -> bool:
        if page < 1:
            page = 1
        if page == self.state.current_page and self.state.load_state == LoadState.SUCCESS:
            return False
        return self.load(page)

    def visible_items(self, query: str | None = None) -> list[dict[str, Any]]:
        needle = (query if query is not None else self.state.query).strip().lower()
        if not needle:
            return list(self.state.items)
        return [item for item in self.state.items if self._matches(item, needle)]

    def _matches(self, item: Mapping[str, Any], needle: str) -> bool:
        for name in self.definition.search_fields:
            value = field_value(item, name)
            if value is not None and needle in str(value).lower():
                return True
        return False

    def find(self, record_id: str) -> dict[str, Any] | None:
        for item in self.state.items:
            if self.definition.record_id(item) == record_id:
                return item
        return None

    def _require_record(self, record_id: str) -> dict[str, Any]:
        record = self.find(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    def open_create(self) -> FormDialog:
        if not self.can_create:
            raise ActionNotAllowedError("create")
        return FormDialog(mode=DIALOG_CREATE, values=form_initial_values(self.definition, None))

    def open_edit(self, record_id: str) -> FormDialog:
        if not self.can_edit:
            raise ActionNotAllowedError("edit")
        record = self._require_record(record_id)
        return FormDialog(
            mode=DIALOG_EDIT,
            record_id=record_id,
            values=form_initial_values(self.definition, record),
        )

    def submit(self, dialog: FormDialog, values: Mapping[str, Any]) -> bool:
        if dialog.state != DialogState.OPEN:
            return False
        allowed = self.can_create if dialog.mode == DIALOG_CREATE else self.can_edit
        if not allowed:
            raise ActionNotAllowedError(dialog.mode)

        dialog.values = {
            form_field.name: str(values.get(form_field.name) or "") for form_field in self.definition.form_fields
        }
        dialog.error = None
        dialog.field_errors = {}
        dialog.move(DialogState.SUBMITTING)

        try:
            payload = build_payload(
                self.definition.form_fields,
                values,
                partial=dialog.mode == DIALOG_EDIT,
            )
            if dialog.mode == DIALOG_CREATE:
                record = self._gateway.create_record(
                    self.definition.path,
                    payload,
                    record_key=self.definition.record_key,
                )
            else:
                record = self._gateway.update_record(
                    self.definition.path,
                    dialog.record_id or "",
                    payload,
                    method=self.definition.update_method,
                    record_key=self.definition.record_key,
                )
        except FormValidationError as exc:
            dialog.move(DialogState.OPEN)
            dialog.field_errors = exc.errors
            dialog.error = "Please correct the highlighted fields."
            return False
        except GatewayError as exc:
            dialog.move(DialogState.OPEN)
            dialog.error = exc.message
            self.notify(NoticeLevel.ERROR, f"Could not save {self.definition.item_label.lower()}", exc.message)
            return False

        dialog.move(DialogState.CLOSED)
        if dialog.mode == DIALOG_CREATE:
            self.state.items.insert(0, record)
            self.state.total_items += 1
            self.notify(
                NoticeLevel.SUCCESS,
                f"{self.definition.item_label} created",
                self.definition.record_title(record),
            )
        else:
            self._replace(dialog.record_id or "", record)
            self.notify(
                NoticeLevel.SUCCESS,
                f"{self.definition.item_label} updated",
                self.definition.record_title(record),
            )
        return True

    def _replace(self, record_id: str, record: dict[str, Any]) -> None:
        for index, item in enumerate(self.state.items):
            if self.definition.record_id(item) == record_id:
                self.state.items[index] = record
                return
        self.state.items.insert(0, record)

    def request_delete(self, record_id: str) -> ConfirmDialog:
        if not self.can_delete:
            raise ActionNotAllowedError("delete")
        record = self._require_record(record_id)
        return ConfirmDialog(record_id=record_id, title=self.definition.record_title(record))

    def cancel_delete(self, dialog: ConfirmDialog) -> None:
        if dialog.state == DialogState.OPEN:
            dialog.move(DialogState.CLOSED)

    def confirm_delete(self, dialog: ConfirmDialog) -> bool:
        if dialog.state != DialogState.OPEN:
            return False
        if not self.can_delete:
            raise ActionNotAllowedError("delete")
        dialog.move(DialogState.SUBMITTING)
        try:
            self._gateway.delete_record(self.definition.path, dialog.record_id)
        except GatewayError as exc:
            dialog.move(DialogState.CLOSED)
            dialog.error = exc.message
            self.notify(NoticeLevel.ERROR, f"Could not delete {self.definition.item_label.lower()}", exc.message)
            return False

        dialog.move(DialogState.CLOSED)
        before = len(self.state.items)
        self.state.items = [
            item for item in self.state.items if self.definition.record_id(item) != dialog.record_id
        ]
        if len(self.state.items) < before:
            self.state.total_items = max(0, self.state.total_items - 1)
        self.notify(NoticeLevel.SUCCESS, f"{self.definition.item_label} deleted", dialog.title)
        return True
