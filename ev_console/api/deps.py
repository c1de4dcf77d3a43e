from __future__ import annotations

import logging
import secrets
from functools import partial
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse, Response

from ev_console.domain.models import Session
from ev_console.domain.roles import ANY_ROLE, Role
from ev_console.infra.audit import set_audit_actor
from ev_console.infra.config import ConsoleSettings, get_settings
from ev_console.infra.storage import RedisBrowserStorage
from ev_console.services.gateway import ApiGateway, HttpTransport, TokenStore
from ev_console.services.resource_page import PageStateStore
from ev_console.services.route_guard import RouteGuard
from ev_console.services.session_store import SessionStore

logger = logging.getLogger(__name__)

BROWSER_COOKIE_NAME = "evsc_browser"
CSRF_COOKIE_NAME = "evsc_csrf"
BROWSER_STATE_KEY = "browser_id"


class GuardRedirect(Exception):
    def __init__(self, location: str):
        super().__init__(location)
        self.location = location


async def guard_redirect_handler(_request: Request, exc: Exception) -> Response:
    location = exc.location if isinstance(exc, GuardRedirect) else "/"
    return RedirectResponse(url=location, status_code=status.HTTP_303_SEE_OTHER)


async def ensure_browser_cookie(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Give every browser a stable id; its durable storage slot hangs off it."""
    browser_id = request.cookies.get(BROWSER_COOKIE_NAME)
    is_new = not browser_id
    if not browser_id:
        browser_id = secrets.token_urlsafe(24)
    setattr(request.state, BROWSER_STATE_KEY, browser_id)
    response = await call_next(request)
    if is_new:
        settings = get_settings()
        response.set_cookie(
            key=BROWSER_COOKIE_NAME,
            value=browser_id,
            httponly=True,
            samesite="lax",
            secure=settings.cookie_secure,
            max_age=settings.storage_ttl_seconds,
            path="/",
        )
    return response


def end_browser_session(sessions: SessionStore, pages: PageStateStore) -> None:
    """Forget the signed-in identity together with every page loaded under it."""
    sessions.logout()
    pages.clear()


def get_http_transport() -> HttpTransport | None:
    """Outbound HTTP client for the gateway; ``None`` builds an ``httpx.Client``."""
    return None


@dataclass
class ConsoleContext:
    settings: ConsoleSettings
    browser_id: str
    sessions: SessionStore
    tokens: TokenStore
    gateway: ApiGateway
    pages: PageStateStore
    guards: list[RouteGuard] = field(default_factory=list)

    @property
    def session(self) -> Session | None:
        return self.sessions.current()

    def ensure_allowed(self) -> None:
        for guard in self.guards:
            decision = guard.evaluate()
            if not decision.allowed:
                raise GuardRedirect(decision.redirect_to or "/")


def get_console(
    request: Request,
    http: Annotated[HttpTransport | None, Depends(get_http_transport)],
) -> ConsoleContext:
    settings = get_settings()
    browser_id = getattr(request.state, BROWSER_STATE_KEY, None) or request.cookies.get(BROWSER_COOKIE_NAME)
    if not browser_id:
        browser_id = secrets.token_urlsafe(24)
    storage = RedisBrowserStorage(browser_id, ttl_seconds=settings.storage_ttl_seconds)
    sessions = SessionStore(storage)
    tokens = TokenStore(storage)
    pages = PageStateStore(storage)
    end_session = partial(end_browser_session, sessions, pages)
    gateway = ApiGateway(settings, tokens, http=http, on_unauthorized=end_session)
    if sessions.current() is not None and tokens.load() is None:
        # a session without credentials cannot call the backend
        end_session()
    return ConsoleContext(
        settings=settings,
        browser_id=browser_id,
        sessions=sessions,
        tokens=tokens,
        gateway=gateway,
        pages=pages,
    )


def requested_path(request: Request) -> str:
    path = request.url.path
    if request.url.query:
        path = f"{path}?{request.url.query}"
    return path


def enforce_roles(request: Request, console: ConsoleContext, roles: Iterable[Role]) -> ConsoleContext:
    guard = RouteGuard(console.sessions, roles)
    decision = guard.evaluate(requested_path(request))
    if not decision.allowed:
        logger.debug("guard redirect %s -> %s", request.url.path, decision.redirect_to)
        raise GuardRedirect(decision.redirect_to or "/")
    console.guards.append(guard)
    session = console.session
    if session is not None:
        set_audit_actor(request, name=session.name, role=session.role.value, center_id=session.center_id)
    return console


def require_roles(*roles: Role) -> Callable[..., ConsoleContext]:
    required = frozenset(roles) if roles else ANY_ROLE

    def _checker(
        request: Request,
        console: Annotated[ConsoleContext, Depends(get_console)],
    ) -> ConsoleContext:
        return enforce_roles(request, console, required)

    return _checker


def new_csrf_token() -> str:
    return secrets.token_urlsafe(24)


def set_csrf_cookie(response: Response, csrf_token: str, *, secure: bool = False) -> None:
    response.set_cookie(
        key=CSRF_COOKIE_NAME,
        value=csrf_token,
        httponly=False,
        samesite="strict",
        secure=secure,
        path="/",
    )


def verify_csrf(request: Request, csrf_token: str) -> None:
    csrf_cookie = request.cookies.get(CSRF_COOKIE_NAME)
    if not csrf_cookie or not csrf_token:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid csrf token")
    if not secrets.compare_digest(csrf_cookie, csrf_token):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid csrf token")


async def get_form_values(request: Request) -> dict[str, str]:
    form = await request.form()
    values: dict[str, str] = {}
    for key, value in form.multi_items():
        if isinstance(value, str):
            values[key] = value
    return values
