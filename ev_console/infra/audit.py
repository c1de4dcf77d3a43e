from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ev_console.domain.models import AuditLog, now_utc
from ev_console.infra.db import get_engine

logger = logging.getLogger(__name__)

WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
UNAUDITED_PATHS = {"/healthz", "/readyz"}
AUDIT_CONTEXT_STATE_KEY = "_audit_context"
AUDIT_ACTOR_STATE_KEY = "console_actor"
NO_CENTER = "unassigned"


def write_audit_log(
    *,
    center_id: str,
    actor: str | None,
    role: str | None,
    action: str,
    resource: str,
    method: str,
    status_code: int,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        center_id=center_id,
        actor=actor,
        role=role,
        action=action,
        resource=resource,
        method=method,
        status_code=status_code,
        detail=detail or {},
    )
    with Session(get_engine()) as session:
        session.add(log)
        session.commit()


def recent_audit_logs(limit: int = 10) -> list[AuditLog]:
    with Session(get_engine(), expire_on_commit=False) as session:
        statement = select(AuditLog).order_by(AuditLog.ts.desc()).limit(limit)
        return list(session.exec(statement).all())


def _deep_merge(base: dict[str, Any], extra: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
            continue
        merged[key] = value
    return merged


def _status_outcome(status_code: int) -> str:
    if status_code >= 500:
        return "error"
    if status_code in {401, 403, 404}:
        return "denied"
    if status_code >= 400:
        return "rejected"
    return "success"


def set_audit_context(
    request: Request,
    *,
    action: str | None = None,
    resource: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
    context = dict(context_raw) if isinstance(context_raw, dict) else {}

    if action is not None:
        context["action"] = action
    if resource is not None:
        context["resource"] = resource
    if detail:
        previous_detail = context.get("detail")
        if isinstance(previous_detail, dict):
            context["detail"] = _deep_merge(previous_detail, detail)
        else:
            context["detail"] = detail

    setattr(request.state, AUDIT_CONTEXT_STATE_KEY, context)


def set_audit_actor(request: Request, *, name: str | None, role: str | None, center_id: str | None) -> None:
    setattr(request.state, AUDIT_ACTOR_STATE_KEY, {"name": name, "role": role, "center_id": center_id})


class AuditMiddleware(BaseHTTPMiddleware):
    """Records every console form submission (who, when, where, what, result)."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        path = request.url.path
        method = request.method
        if path in UNAUDITED_PATHS or method not in WRITE_METHODS:
            return response

        context_raw = getattr(request.state, AUDIT_CONTEXT_STATE_KEY, {})
        context = context_raw if isinstance(context_raw, dict) else {}
        actor_raw = getattr(request.state, AUDIT_ACTOR_STATE_KEY, {})
        actor = actor_raw if isinstance(actor_raw, dict) else {}

        raw_action = context.get("action")
        raw_resource = context.get("resource")
        action: str = raw_action if isinstance(raw_action, str) else f"{method}:{path}"
        resource: str = raw_resource if isinstance(raw_resource, str) else path
        center_id = actor.get("center_id") or NO_CENTER

        route = request.scope.get("route")
        base_detail: dict[str, Any] = {
            "who": {
                "actor": actor.get("name"),
                "role": actor.get("role"),
                "center_id": center_id,
            },
            "when": {
                "request_ts": now_utc().isoformat(),
            },
            "where": {
                "path": path,
                "route": getattr(route, "path", path),
                "client_ip": request.client.host if request.client is not None else None,
            },
            "what": {
                "action": action,
                "resource": resource,
                "method": method,
            },
            "result": {
                "status_code": response.status_code,
                "outcome": _status_outcome(response.status_code),
            },
        }
        context_detail = context.get("detail")
        detail = _deep_merge(base_detail, context_detail) if isinstance(context_detail, dict) else base_detail

        try:
            write_audit_log(
                center_id=center_id,
                actor=actor.get("name"),
                role=actor.get("role"),
                action=action,
                resource=resource,
                method=method,
                status_code=response.status_code,
                detail=detail,
            )
        except SQLAlchemyError:
            logger.exception("failed to write audit log for %s %s", method, path)
        return response
