from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from urllib.parse import quote

from ev_console.domain.models import Session
from ev_console.domain.roles import ANY_ROLE, GENERIC_HOME_PATH, Role, has_any_role
from ev_console.domain.state_machine import GuardState, InvalidTransitionError, can_guard_transition
from ev_console.services.session_store import SessionStore

LOGIN_PATH = "/login"


def login_redirect_path(requested_path: str | None) -> str:
    if not requested_path:
        return LOGIN_PATH
    return f"{LOGIN_PATH}?next={quote(requested_path, safe='/')}"


@dataclass(frozen=True)
class GuardDecision:
    state: GuardState
    redirect_to: str | None = None

    @property
    def allowed(self) -> bool:
        return self.state == GuardState.ALLOWED


class RouteGuard:
    def __init__(
        self,
        store: SessionStore,
        required_roles: Iterable[Role] = ANY_ROLE,
        *,
        fallback_path: str = GENERIC_HOME_PATH,
    ) -> None:
        self._store = store
        self._required_roles = frozenset(required_roles)
        self._fallback_path = fallback_path
        self._state = GuardState.PENDING
        self._decision = GuardDecision(GuardState.PENDING)
        self._requested_path: str | None = None
        store.subscribe(self._on_session_changed)

    @property
    def state(self) -> GuardState:
        return self._state

    @property
    def required_roles(self) -> frozenset[Role]:
        return self._required_roles

    def _move(self, target: GuardState) -> None:
        if target == self._state:
            return
        if not can_guard_transition(self._state, target):
            raise InvalidTransitionError(f"guard cannot move from {self._state} to {target}")
        self._state = target

    def decide(self, session: Session | None, requested_path: str | None) -> GuardDecision:
        if session is None:
            return GuardDecision(GuardState.DENIED, login_redirect_path(requested_path))
        if not has_any_role(session, self._required_roles):
            return GuardDecision(GuardState.DENIED, self._fallback_path)
        return GuardDecision(GuardState.ALLOWED)

    def evaluate(self, requested_path: str | None = None) -> GuardDecision:
        if requested_path is not None:
            self._requested_path = requested_path
        if self._state != GuardState.PENDING:
            return self._decision
        session = self._store.current()
        decision = self.decide(session, self._requested_path)
        self._move(decision.state)
        self._decision = decision
        return decision

    def _on_session_changed(self, _session: Session | None) -> None:
        self._move(GuardState.PENDING)
        self._decision = GuardDecision(GuardState.PENDING)

    def close(self) -> None:
        self._store.unsubscribe(self._on_session_changed)
