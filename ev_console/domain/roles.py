from __future__ import annotations

from collections.abc import Iterable
from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ev_console.domain.models import Session


class Role(StrEnum):
    ADMIN = "Admin"
    STAFF = "Staff"
    TECHNICIAN = "Technician"
    CUSTOMER = "Customer"


ANY_ROLE: frozenset[Role] = frozenset(Role)
ADMIN_ONLY: frozenset[Role] = frozenset({Role.ADMIN})
STAFF_ONLY: frozenset[Role] = frozenset({Role.STAFF})
TECHNICIAN_ONLY: frozenset[Role] = frozenset({Role.TECHNICIAN})
ADMIN_OR_STAFF: frozenset[Role] = frozenset({Role.ADMIN, Role.STAFF})
SERVICE_TEAM: frozenset[Role] = frozenset({Role.ADMIN, Role.STAFF, Role.TECHNICIAN})
NO_ROLE: frozenset[Role] = frozenset()

API_ROLE_NAMES: dict[str, Role] = {
    "ADMIN": Role.ADMIN,
    "STAFF": Role.STAFF,
    "TECHNICIAN": Role.TECHNICIAN,
    "CUSTOMER": Role.CUSTOMER,
}

GENERIC_HOME_PATH = "/"
HOME_PATHS: dict[Role, str] = {
    Role.ADMIN: "/admin",
    Role.STAFF: "/staff-home",
    Role.TECHNICIAN: "/technician",
}


def role_from_api(value: object) -> Role | None:
    if not isinstance(value, str):
        return None
    return API_ROLE_NAMES.get(value.strip().upper())


def role_to_api(role: Role) -> str:
    return role.value.upper()


def session_role(session: Session | None) -> Role | None:
    if session is None:
        return None
    return session.role


def has_any_role(session: Session | None, roles: Iterable[Role]) -> bool:
    role = session_role(session)
    if role is None:
        return False
    return role in frozenset(roles)


def is_admin(session: Session | None) -> bool:
    return has_any_role(session, ADMIN_ONLY)


def is_staff(session: Session | None) -> bool:
    return has_any_role(session, STAFF_ONLY)


def is_technician(session: Session | None) -> bool:
    return has_any_role(session, TECHNICIAN_ONLY)


def is_service_team(session: Session | None) -> bool:
    return has_any_role(session, SERVICE_TEAM)


def home_path_for(role: Role | None) -> str:
    if role is None:
        return GENERIC_HOME_PATH
    return HOME_PATHS.get(role, GENERIC_HOME_PATH)
