from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response

from ev_console.api.deps import (
    ConsoleContext,
    GuardRedirect,
    enforce_roles,
    get_console,
    get_form_values,
    verify_csrf,
)
from ev_console.api.routers.ui import render_console
from ev_console.domain.models import NoticeLevel
from ev_console.domain.roles import ANY_ROLE
from ev_console.domain.state_machine import LoadState
from ev_console.infra.audit import set_audit_context
from ev_console.services.gateway import GatewayError
from ev_console.services.resource_page import (
    ActionNotAllowedError,
    ConfirmDialog,
    FormDialog,
    RecordNotFoundError,
    ResourcePage,
    pagination_window,
)
from ev_console.services.resources import (
    ResourceDefinition,
    UnknownResourceError,
    get_resource,
)

router = APIRouter()

CONFIRM_ACTION = "confirm"
CANCEL_ACTION = "cancel"


def _definition(resource_key: str) -> ResourceDefinition:
    try:
        return get_resource(resource_key)
    except UnknownResourceError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found") from exc


def _open_page(
    request: Request,
    console: ConsoleContext,
    resource_key: str,
) -> ResourcePage:
    # anonymous visitors go to login before learning which resources exist
    enforce_roles(request, console, ANY_ROLE)
    definition = _definition(resource_key)
    enforce_roles(request, console, definition.view_roles)
    return ResourcePage(
        definition,
        console.gateway,
        console.session,
        console.pages.load(definition.key),
        limit=console.settings.page_limit,
    )


def _back_to_list(page: ResourcePage, console: ConsoleContext) -> RedirectResponse:
    console.pages.save(page.state)
    return RedirectResponse(url=page.definition.href, status_code=status.HTTP_303_SEE_OTHER)


def _render_form(
    request: Request,
    console: ConsoleContext,
    page: ResourcePage,
    dialog: FormDialog,
    *,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    definition = page.definition
    verb = "New" if dialog.mode == "create" else "Edit"
    action = f"{definition.href}/new" if dialog.mode == "create" else f"{definition.href}/{dialog.record_id}/edit"
    return render_console(
        request,
        console,
        template_name="resource_form.html",
        active_nav=definition.key,
        title=f"{verb} {definition.item_label.lower()}",
        subtitle=definition.label,
        notices=page.take_notices(),
        status_code=status_code,
        resource=definition,
        dialog=dialog,
        form_action=action,
    )


@router.get("/{resource_key}")
def list_records(
    request: Request,
    resource_key: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
    page_number: int | None = Query(default=None, alias="page", ge=1),
    q: str = Query(default=""),
    refresh: bool = Query(default=False),
) -> Response:
    page = _open_page(request, console, resource_key)
    if page.state.load_state == LoadState.IDLE or refresh:
        page.load(page_number or 1)
    elif page_number is not None:
        page.change_page(page_number)
    console.ensure_allowed()

    page.state.query = q.strip()
    notices = page.take_notices()
    console.pages.save(page.state)

    rows = page.visible_items()
    definition = page.definition
    return render_console(
        request,
        console,
        template_name="resource_list.html",
        active_nav=definition.key,
        title=definition.label,
        subtitle=definition.description,
        notices=notices,
        resource=definition,
        rows=rows,
        record_ids=[definition.record_id(item) for item in rows],
        query=page.state.query,
        current_page=page.state.current_page,
        total_pages=page.state.total_pages,
        total_items=page.state.total_items,
        pages=pagination_window(page.state.current_page, page.state.total_pages),
        load_state=page.state.load_state,
        can_create=page.can_create,
        can_edit=page.can_edit,
        can_delete=page.can_delete,
    )


@router.get("/{resource_key}/new")
def new_record(
    request: Request,
    resource_key: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
) -> Response:
    page = _open_page(request, console, resource_key)
    try:
        dialog = page.open_create()
    except ActionNotAllowedError as exc:
        raise GuardRedirect(page.definition.href) from exc
    return _render_form(request, console, page, dialog)


@router.post("/{resource_key}/new")
def create_record(
    request: Request,
    resource_key: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
    values: Annotated[dict[str, str], Depends(get_form_values)],
) -> Response:
    verify_csrf(request, values.get("csrf_token", ""))
    page = _open_page(request, console, resource_key)
    set_audit_context(request, action=f"{page.definition.key}.create", resource=page.definition.key)
    try:
        dialog = page.open_create()
    except ActionNotAllowedError as exc:
        raise GuardRedirect(page.definition.href) from exc

    saved = page.submit(dialog, values)
    console.ensure_allowed()
    if not saved:
        return _render_form(request, console, page, dialog, status_code=status.HTTP_400_BAD_REQUEST)
    created_id = page.definition.record_id(page.items[0]) if page.items else ""
    set_audit_context(request, detail={"what": {"record_id": created_id}})
    return _back_to_list(page, console)


@router.get("/{resource_key}/{record_id}")
def record_detail(
    request: Request,
    resource_key: str,
    record_id: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
) -> Response:
    page = _open_page(request, console, resource_key)
    definition = page.definition
    record: dict[str, Any] | None = None
    error_message: str | None = None
    try:
        record = console.gateway.get_record(definition.path, record_id, record_key=definition.record_key)
    except GatewayError as exc:
        console.ensure_allowed()
        error_message = exc.message
        record = page.find(record_id)

    if record is None:
        page.notify(NoticeLevel.ERROR, f"Could not open {definition.item_label.lower()}", error_message or "")
        return _back_to_list(page, console)

    return render_console(
        request,
        console,
        template_name="resource_detail.html",
        active_nav=definition.key,
        title=definition.record_title(record),
        subtitle=definition.item_label,
        resource=definition,
        record=record,
        record_id=record_id,
        error_message=error_message,
        can_edit=page.can_edit and page.find(record_id) is not None,
        can_delete=page.can_delete and page.find(record_id) is not None,
    )


@router.get("/{resource_key}/{record_id}/edit")
def edit_record(
    request: Request,
    resource_key: str,
    record_id: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
) -> Response:
    page = _open_page(request, console, resource_key)
    try:
        dialog = page.open_edit(record_id)
    except ActionNotAllowedError as exc:
        raise GuardRedirect(page.definition.href) from exc
    except RecordNotFoundError:
        page.notify(NoticeLevel.ERROR, "Record is not on the current page", "Reload the list and try again.")
        return _back_to_list(page, console)
    return _render_form(request, console, page, dialog)


@router.post("/{resource_key}/{record_id}/edit")
def update_record(
    request: Request,
    resource_key: str,
    record_id: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
    values: Annotated[dict[str, str], Depends(get_form_values)],
) -> Response:
    verify_csrf(request, values.get("csrf_token", ""))
    page = _open_page(request, console, resource_key)
    set_audit_context(
        request,
        action=f"{page.definition.key}.update",
        resource=page.definition.key,
        detail={"what": {"record_id": record_id}},
    )
    try:
        dialog = page.open_edit(record_id)
    except ActionNotAllowedError as exc:
        raise GuardRedirect(page.definition.href) from exc
    except RecordNotFoundError:
        page.notify(NoticeLevel.ERROR, "Record is not on the current page", "Reload the list and try again.")
        return _back_to_list(page, console)

    saved = page.submit(dialog, values)
    console.ensure_allowed()
    if not saved:
        return _render_form(request, console, page, dialog, status_code=status.HTTP_400_BAD_REQUEST)
    return _back_to_list(page, console)


@router.get("/{resource_key}/{record_id}/delete")
def delete_confirmation(
    request: Request,
    resource_key: str,
    record_id: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
) -> Response:
    page = _open_page(request, console, resource_key)
    try:
        dialog = page.request_delete(record_id)
    except ActionNotAllowedError as exc:
        raise GuardRedirect(page.definition.href) from exc
    except RecordNotFoundError:
        page.notify(NoticeLevel.ERROR, "Record is not on the current page", "Reload the list and try again.")
        return _back_to_list(page, console)
    return render_console(
        request,
        console,
        template_name="resource_confirm_delete.html",
        active_nav=page.definition.key,
        title=f"Delete {page.definition.item_label.lower()}",
        subtitle=page.definition.label,
        resource=page.definition,
        dialog=dialog,
    )


@router.post("/{resource_key}/{record_id}/delete")
def delete_record(
    request: Request,
    resource_key: str,
    record_id: str,
    console: Annotated[ConsoleContext, Depends(get_console)],
    csrf_token: str = Form(...),
    action: str = Form(CANCEL_ACTION),
) -> Response:
    verify_csrf(request, csrf_token)
    page = _open_page(request, console, resource_key)
    set_audit_context(
        request,
        action=f"{page.definition.key}.delete",
        resource=page.definition.key,
        detail={"what": {"record_id": record_id, "confirmed": action == CONFIRM_ACTION}},
    )
    try:
        dialog: ConfirmDialog = page.request_delete(record_id)
    except ActionNotAllowedError as exc:
        raise GuardRedirect(page.definition.href) from exc
    except RecordNotFoundError:
        page.notify(NoticeLevel.ERROR, "Record is not on the current page", "Reload the list and try again.")
        return _back_to_list(page, console)

    if action != CONFIRM_ACTION:
        page.cancel_delete(dialog)
        return _back_to_list(page, console)
    page.confirm_delete(dialog)
    console.ensure_allowed()
    return _back_to_list(page, console)
