from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from ev_console.domain.models import AuditLog, DashboardTile, Session
from ev_console.domain.roles import Role, has_any_role
from ev_console.infra.audit import recent_audit_logs
from ev_console.services.gateway import ApiGateway, AuthError, GatewayError
from ev_console.services.resources import get_resource

logger = logging.getLogger(__name__)

HOME_TILES: dict[Role, tuple[str, ...]] = {
    Role.ADMIN: ("appointments", "customers", "vehicles", "centers", "payments", "staff"),
    Role.STAFF: ("appointments", "customers", "vehicles", "payments"),
    Role.TECHNICIAN: ("service-records", "appointments", "auto-parts"),
}

HOME_TITLES: dict[Role, str] = {
    Role.ADMIN: "Admin overview",
    Role.STAFF: "Staff workspace",
    Role.TECHNICIAN: "Technician workspace",
}


@dataclass
class HomeView:
    title: str
    tiles: list[DashboardTile]
    errors: list[str]
    recent_activity: list[AuditLog]


class DashboardService:
    def __init__(self, gateway: ApiGateway) -> None:
        self._gateway = gateway

    def _tile(self, key: str, session: Session) -> tuple[DashboardTile, str | None]:
        definition = get_resource(key)
        tile = DashboardTile(key=key, label=definition.label, href=definition.href)
        if not has_any_role(session, definition.view_roles):
            return tile, None
        try:
            page = self._gateway.list_records(definition.path, page=1, limit=1, list_key=definition.list_key)
        except AuthError:
            raise
        except GatewayError as exc:
            logger.info("dashboard total unavailable for %s: %s", key, exc.message)
            return tile, f"{definition.label}: {exc.message}"
        return tile.model_copy(update={"total": page.total}), None

    def home(self, session: Session, role: Role, *, include_activity: bool = False) -> HomeView:
        tiles: list[DashboardTile] = []
        errors: list[str] = []
        for key in HOME_TILES.get(role, ()):
            try:
                tile, error = self._tile(key, session)
            except AuthError as exc:
                # session is gone; the caller re-checks its guard
                errors.append(exc.message)
                break
            tiles.append(tile)
            if error:
                errors.append(error)
        activity: list[AuditLog] = []
        if include_activity:
            try:
                activity = recent_audit_logs()
            except SQLAlchemyError:
                logger.exception("failed to read recent console activity")
        return HomeView(title=HOME_TITLES.get(role, "Home"), tiles=tiles, errors=errors, recent_activity=activity)
