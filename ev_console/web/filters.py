from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime, timedelta, timezone
from typing import Any

from ev_console.services.resources import (
    FORMAT_DATE,
    FORMAT_DATETIME,
    FORMAT_MONEY,
    Column,
    field_value,
)

# Asia/Ho_Chi_Minh has no DST.
VIETNAM_TZ = timezone(timedelta(hours=7), name="ICT")
EMPTY_CELL = "-"


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(VIETNAM_TZ)


def format_vnd(value: Any) -> str:
    if value is None or value == "" or isinstance(value, bool):
        return EMPTY_CELL
    try:
        amount = round(float(value))
    except (TypeError, ValueError):
        return str(value)
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(amount):,}".replace(",", ".")
    return f"{sign}{grouped} ₫"


def format_date(value: Any) -> str:
    parsed = _parse_datetime(value)
    if parsed is None:
        return EMPTY_CELL if value in (None, "") else str(value)
    return parsed.strftime("%d/%m/%Y")


def format_datetime(value: Any) -> str:
    parsed = _parse_datetime(value)
    if parsed is None:
        return EMPTY_CELL if value in (None, "") else str(value)
    return parsed.strftime("%H:%M:%S %d/%m/%Y")


def display_value(value: Any) -> str:
    if value is None or value == "":
        return EMPTY_CELL
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, Mapping):
        for key in ("name", "customerName", "vehicleName", "email", "_id"):
            if value.get(key):
                return str(value[key])
        return EMPTY_CELL
    if isinstance(value, list):
        return ", ".join(display_value(item) for item in value) or EMPTY_CELL
    return str(value)


def format_cell(record: Mapping[str, Any], column: Column) -> str:
    value = field_value(record, column.key)
    if column.format == FORMAT_MONEY:
        return format_vnd(value)
    if column.format == FORMAT_DATE:
        return format_date(value)
    if column.format == FORMAT_DATETIME:
        return format_datetime(value)
    return display_value(value)


def register_filters(env: Any) -> None:
    env.filters["vnd"] = format_vnd
    env.filters["date_vn"] = format_date
    env.filters["datetime_vn"] = format_datetime
    env.filters["display"] = display_value
    env.globals["format_cell"] = format_cell
