from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from ev_console.api.deps import (
    CSRF_COOKIE_NAME,
    ConsoleContext,
    end_browser_session,
    get_console,
    new_csrf_token,
    require_roles,
    set_csrf_cookie,
    verify_csrf,
)
from ev_console.domain.models import Notice, NoticeLevel, Session
from ev_console.domain.roles import (
    ADMIN_ONLY,
    ANY_ROLE,
    GENERIC_HOME_PATH,
    HOME_PATHS,
    Role,
    has_any_role,
    home_path_for,
    role_from_api,
    role_to_api,
)
from ev_console.infra.audit import set_audit_actor, set_audit_context
from ev_console.services.dashboard_service import DashboardService
from ev_console.services.gateway import ApiError, AuthError, GatewayError
from ev_console.services.resources import RESOURCES
from ev_console.services.route_guard import LOGIN_PATH
from ev_console.web.filters import register_filters

logger = logging.getLogger(__name__)

router = APIRouter()
templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[2] / "web" / "templates"))
register_filters(templates.env)

REGISTRABLE_ROLES = tuple(role_to_api(role) for role in (Role.STAFF, Role.TECHNICIAN, Role.ADMIN))
HOME_NAV_KEYS: dict[Role, str] = {Role.ADMIN: "admin", Role.STAFF: "staff-home", Role.TECHNICIAN: "technician"}


@dataclass(frozen=True)
class ConsoleNavItem:
    key: str
    label: str
    href: str
    description: str
    roles: frozenset[Role] = ANY_ROLE


NAV_ITEMS: tuple[ConsoleNavItem, ...] = (
    ConsoleNavItem(
        key="admin",
        label="Overview",
        href=HOME_PATHS[Role.ADMIN],
        description="Center-wide totals and recent console activity.",
        roles=frozenset({Role.ADMIN}),
    ),
    ConsoleNavItem(
        key="staff-home",
        label="Workspace",
        href=HOME_PATHS[Role.STAFF],
        description="Front desk totals.",
        roles=frozenset({Role.STAFF}),
    ),
    ConsoleNavItem(
        key="technician",
        label="Workspace",
        href=HOME_PATHS[Role.TECHNICIAN],
        description="Assigned work.",
        roles=frozenset({Role.TECHNICIAN}),
    ),
    *(
        ConsoleNavItem(
            key=item.key,
            label=item.label,
            href=item.href,
            description=item.description,
            roles=item.view_roles,
        )
        for item in RESOURCES
    ),
    ConsoleNavItem(
        key="register",
        label="Register staff",
        href="/register",
        description="Create staff, technician and admin accounts.",
        roles=ADMIN_ONLY,
    ),
)


def _sanitize_next_path(next_path: str | None) -> str | None:
    if not next_path:
        return None
    parsed = urlparse(next_path)
    if parsed.scheme or parsed.netloc:
        return None
    if not parsed.path.startswith("/") or parsed.path.startswith("//"):
        return None
    if parsed.path == LOGIN_PATH:
        return None
    sanitized = parsed.path
    if parsed.query:
        sanitized = f"{sanitized}?{parsed.query}"
    return sanitized


def _visible_nav_items(session: Session | None, active_key: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for item in NAV_ITEMS:
        if not has_any_role(session, item.roles):
            continue
        rows.append(
            {
                "key": item.key,
                "label": item.label,
                "href": item.href,
                "description": item.description,
                "active": item.key == active_key,
            }
        )
    return rows


def render_console(
    request: Request,
    console: ConsoleContext,
    *,
    template_name: str,
    active_nav: str,
    title: str,
    subtitle: str = "",
    notices: list[Notice] | None = None,
    status_code: int = status.HTTP_200_OK,
    **extra: Any,
) -> Response:
    session = console.session
    csrf_token = request.cookies.get(CSRF_COOKIE_NAME) or new_csrf_token()
    context: dict[str, Any] = {
        "page_title": title,
        "page_subtitle": subtitle,
        "session": session,
        "nav_items": _visible_nav_items(session, active_nav),
        "csrf_token": csrf_token,
        "notices": notices or [],
    }
    context.update(extra)
    response = templates.TemplateResponse(
        request=request,
        name=template_name,
        context=context,
        status_code=status_code,
    )
    if not request.cookies.get(CSRF_COOKIE_NAME):
        set_csrf_cookie(response, csrf_token, secure=console.settings.cookie_secure)
    return response


def _render_login(
    request: Request,
    console: ConsoleContext,
    *,
    next_path: str | None,
    identifier: str = "",
    error_message: str | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    csrf_token = request.cookies.get(CSRF_COOKIE_NAME) or new_csrf_token()
    response = templates.TemplateResponse(
        request=request,
        name="login.html",
        context={
            "next_path": next_path or "",
            "identifier": identifier,
            "error_message": error_message,
            "csrf_token": csrf_token,
        },
        status_code=status_code,
    )
    set_csrf_cookie(response, csrf_token, secure=console.settings.cookie_secure)
    return response


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)


def _render_home(request: Request, console: ConsoleContext, role: Role) -> Response:
    session = console.session
    if session is None:
        return _redirect(LOGIN_PATH)
    view = DashboardService(console.gateway).home(
        session,
        role,
        include_activity=role == Role.ADMIN and console.settings.audit_enabled,
    )
    console.ensure_allowed()
    notices = [
        Notice(level=NoticeLevel.ERROR, title="Some totals are unavailable", message=item) for item in view.errors
    ]
    return render_console(
        request,
        console,
        template_name="home.html",
        active_nav=HOME_NAV_KEYS.get(role, ""),
        title=view.title,
        subtitle=f"Signed in as {session.name}",
        notices=notices,
        tiles=view.tiles,
        recent_activity=view.recent_activity,
    )


@router.get("/")
def home(
    request: Request,
    console: Annotated[ConsoleContext, Depends(require_roles())],
) -> Response:
    role = console.sessions.role()
    target = home_path_for(role)
    if target != GENERIC_HOME_PATH:
        return _redirect(target)
    session = console.session
    return render_console(
        request,
        console,
        template_name="home.html",
        active_nav="",
        title="EV Service Center",
        subtitle=f"Signed in as {session.name}" if session else "",
        tiles=[],
        recent_activity=[],
    )


@router.get("/admin")
def admin_home(
    request: Request,
    console: Annotated[ConsoleContext, Depends(require_roles(Role.ADMIN))],
) -> Response:
    return _render_home(request, console, Role.ADMIN)


@router.get("/staff-home")
def staff_home(
    request: Request,
    console: Annotated[ConsoleContext, Depends(require_roles(Role.STAFF))],
) -> Response:
    return _render_home(request, console, Role.STAFF)


@router.get("/technician")
def technician_home(
    request: Request,
    console: Annotated[ConsoleContext, Depends(require_roles(Role.TECHNICIAN))],
) -> Response:
    return _render_home(request, console, Role.TECHNICIAN)


@router.get("/login")
def login_page(
    request: Request,
    console: Annotated[ConsoleContext, Depends(get_console)],
    next_path: str | None = Query(default=None, alias="next"),
) -> Response:
    safe_next = _sanitize_next_path(next_path)
    session = console.session
    if session is not None:
        return _redirect(safe_next or home_path_for(session.role))
    return _render_login(request, console, next_path=safe_next)


@router.post("/login")
def login_submit(
    request: Request,
    console: Annotated[ConsoleContext, Depends(get_console)],
    identifier: str = Form(...),
    password: str = Form(...),
    csrf_token: str = Form(...),
    next_path: str = Form("", alias="next"),
) -> Response:
    safe_next = _sanitize_next_path(next_path)
    set_audit_context(request, action="auth.login", resource="session", detail={"what": {"identifier": identifier}})
    try:
        verify_csrf(request, csrf_token)
    except HTTPException as exc:
        return _render_login(
            request,
            console,
            next_path=safe_next,
            identifier=identifier,
            error_message=str(exc.detail),
            status_code=exc.status_code,
        )

    try:
        result = console.gateway.login(identifier.strip(), password)
    except AuthError as exc:
        logger.info("login rejected for %s", identifier)
        return _render_login(
            request,
            console,
            next_path=safe_next,
            identifier=identifier,
            error_message=exc.message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    except ApiError as exc:
        return _render_login(
            request,
            console,
            next_path=safe_next,
            identifier=identifier,
            error_message=exc.message,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    role = role_from_api(result.role)
    if role is None:
        logger.warning("login for %s returned unsupported role %r", identifier, result.role)
        console.tokens.save(None)
        return _render_login(
            request,
            console,
            next_path=safe_next,
            identifier=identifier,
            error_message="This account cannot use the service center console.",
            status_code=status.HTTP_401_UNAUTHORIZED,
        )

    name = identifier.strip().split("@")[0] or identifier.strip()
    email = identifier.strip() if "@" in identifier else None
    center_id: str | None = None
    try:
        profile = console.gateway.get_profile()
    except AuthError as exc:
        return _render_login(
            request,
            console,
            next_path=safe_next,
            identifier=identifier,
            error_message=exc.message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )
    except GatewayError as exc:
        logger.info("profile unavailable after login for %s: %s", identifier, exc.message)
    else:
        if isinstance(profile.get("name"), str) and profile["name"].strip():
            name = profile["name"].strip()
        if isinstance(profile.get("centerId"), str):
            center_id = profile["centerId"]

    session = Session(name=name, role=role, center_id=center_id, email=email)
    # pages loaded under a previous identity must not leak into this one
    console.pages.clear()
    console.sessions.login(session)
    set_audit_actor(request, name=session.name, role=session.role.value, center_id=session.center_id)
    logger.info("console login: %s (%s)", session.name, session.role.value)

    response = _redirect(safe_next or home_path_for(role))
    set_csrf_cookie(response, new_csrf_token(), secure=console.settings.cookie_secure)
    return response


@router.post("/logout")
def logout(
    request: Request,
    console: Annotated[ConsoleContext, Depends(get_console)],
    csrf_token: str = Form(...),
) -> RedirectResponse:
    verify_csrf(request, csrf_token)
    session = console.session
    if session is not None:
        set_audit_actor(request, name=session.name, role=session.role.value, center_id=session.center_id)
    set_audit_context(request, action="auth.logout", resource="session")

    console.gateway.logout()
    end_browser_session(console.sessions, console.pages)
    response = _redirect(LOGIN_PATH)
    set_csrf_cookie(response, new_csrf_token(), secure=console.settings.cookie_secure)
    return response


def _render_register(
    request: Request,
    console: ConsoleContext,
    *,
    values: dict[str, str] | None = None,
    error_message: str | None = None,
    notices: list[Notice] | None = None,
    status_code: int = status.HTTP_200_OK,
) -> Response:
    return render_console(
        request,
        console,
        template_name="register.html",
        active_nav="register",
        title="Register staff",
        subtitle="Create a console account for a center employee.",
        notices=notices,
        status_code=status_code,
        values=values or {"email": "", "role": "STAFF", "centerId": ""},
        role_options=REGISTRABLE_ROLES,
        error_message=error_message,
    )


@router.get("/register")
def register_page(
    request: Request,
    console: Annotated[ConsoleContext, Depends(require_roles(Role.ADMIN))],
) -> Response:
    return _render_register(request, console)


@router.post("/register")
def register_submit(
    request: Request,
    console: Annotated[ConsoleContext, Depends(require_roles(Role.ADMIN))],
    email: str = Form(...),
    password: str = Form(...),
    role: str = Form(...),
    center_id: str = Form("", alias="centerId"),
    csrf_token: str = Form(...),
) -> Response:
    verify_csrf(request, csrf_token)
    values = {"email": email, "role": role, "centerId": center_id}
    set_audit_context(request, action="auth.register_staff", resource="users", detail={"what": {"email": email}})

    if role not in REGISTRABLE_ROLES or not email.strip() or not password:
        return _render_register(
            request,
            console,
            values=values,
            error_message="Email, password and a staff role are required.",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    payload: dict[str, Any] = {"email": email.strip(), "password": password, "role": role}
    if center_id.strip():
        payload["centerId"] = center_id.strip()
    try:
        message = console.gateway.register_staff(payload)
    except GatewayError as exc:
        console.ensure_allowed()
        return _render_register(
            request,
            console,
            values=values,
            error_message=exc.message,
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    return _render_register(
        request,
        console,
        notices=[Notice(level=NoticeLevel.SUCCESS, title="Account registered", message=message or email)],
    )
