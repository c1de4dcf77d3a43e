from __future__ import annotations

import math
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from ev_console.domain.roles import Role
from ev_console.domain.state_machine import LoadState


def now_utc() -> datetime:
    return datetime.now(UTC)


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    center_id: str = Field(index=True)
    actor: str | None = Field(default=None, index=True)
    role: str | None = None
    action: str
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Session(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = PydanticField(min_length=1)
    role: Role
    center_id: str | None = None
    email: str | None = None


class Tokens(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str = PydanticField(min_length=1)
    refresh_token: str | None = None
    access_token_expires_at: float


class LoginResult(BaseModel):
    tokens: Tokens
    role: str
    message: str = ""


class ListPage(BaseModel):
    items: list[dict[str, Any]] = PydanticField(default_factory=list)
    total: int = PydanticField(default=0, ge=0)


def total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        raise ValueError("limit must be greater than 0")
    return math.ceil(max(total, 0) / limit)


class NoticeLevel(StrEnum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


class Notice(BaseModel):
    level: NoticeLevel
    title: str
    message: str = ""


class PageState(BaseModel):
    resource: str
    items: list[dict[str, Any]] = PydanticField(default_factory=list)
    current_page: int = PydanticField(default=1, ge=1)
    total_items: int = PydanticField(default=0, ge=0)
    limit: int = PydanticField(default=20, ge=1)
    load_state: LoadState = LoadState.IDLE
    query: str = ""
    notices: list[Notice] = PydanticField(default_factory=list)

    @property
    def total_pages(self) -> int:
        return total_pages(self.total_items, self.limit)


class DashboardTile(BaseModel):
    key: str
    label: str
    href: str
    total: int | None = None
