from __future__ import annotations

import logging
from collections.abc import Callable

from pydantic import ValidationError

from ev_console.domain.models import Session
from ev_console.domain.roles import Role
from ev_console.infra.storage import BrowserStorage, StorageError

logger = logging.getLogger(__name__)

SESSION_KEY = "evsc:user"

SessionListener = Callable[[Session | None], None]


class SessionStore:
    def __init__(self, storage: BrowserStorage) -> None:
        self._storage = storage
        self._session: Session | None = None
        self._resolved = False
        self._listeners: list[SessionListener] = []

    @property
    def is_resolved(self) -> bool:
        return self._resolved

    def initialize(self) -> Session | None:
        if self._resolved:
            return self._session
        self._session = self._rehydrate()
        self._resolved = True
        return self._session

    def _rehydrate(self) -> Session | None:
        try:
            raw = self._storage.get_item(SESSION_KEY)
        except StorageError:
            logger.warning("session storage unavailable, starting unauthenticated")
            return None
        if not raw:
            return None
        try:
            return Session.model_validate_json(raw)
        except (ValidationError, ValueError, TypeError):
            logger.info("discarding unreadable persisted session")
            self._discard_durable_copy()
            return None

    def _discard_durable_copy(self) -> None:
        try:
            self._storage.remove_item(SESSION_KEY)
        except StorageError:
            logger.warning("failed to remove persisted session")

    def current(self) -> Session | None:
        return self.initialize()

    def role(self) -> Role | None:
        session = self.current()
        return session.role if session is not None else None

    def login(self, session: Session) -> None:
        self._session = session
        self._resolved = True
        self._storage.set_item(SESSION_KEY, session.model_dump_json())
        self._notify()

    def logout(self) -> None:
        self._session = None
        self._resolved = True
        self._discard_durable_copy()
        self._notify()

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._session)
