from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


class ConfigurationError(ValueError):
    pass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer") from exc


@dataclass(frozen=True)
class ConsoleSettings:
    api_base_url: str
    request_timeout_seconds: int
    page_limit: int
    redis_url: str
    database_url: str
    storage_ttl_seconds: int
    cookie_secure: bool
    log_level: str
    audit_enabled: bool

    @staticmethod
    def from_env() -> "ConsoleSettings":
        settings = ConsoleSettings(
            api_base_url=os.getenv("EV_CONSOLE_API_BASE_URL", "http://localhost:5000/api").strip().rstrip("/"),
            request_timeout_seconds=_env_int("EV_CONSOLE_REQUEST_TIMEOUT_SECONDS", 30),
            page_limit=_env_int("EV_CONSOLE_PAGE_LIMIT", 20),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0").strip(),
            database_url=os.getenv("DATABASE_URL", "sqlite:///./ev_console.db").strip(),
            storage_ttl_seconds=_env_int("EV_CONSOLE_STORAGE_TTL_SECONDS", 60 * 60 * 8),
            cookie_secure=_env_bool("EV_CONSOLE_COOKIE_SECURE", False),
            log_level=os.getenv("EV_CONSOLE_LOG_LEVEL", "INFO").strip().upper(),
            audit_enabled=_env_bool("EV_CONSOLE_AUDIT_ENABLED", True),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if not self.api_base_url.startswith(("http://", "https://")):
            raise ConfigurationError("EV_CONSOLE_API_BASE_URL must be an http(s) URL")
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("EV_CONSOLE_REQUEST_TIMEOUT_SECONDS must be greater than 0")
        if self.page_limit <= 0:
            raise ConfigurationError("EV_CONSOLE_PAGE_LIMIT must be greater than 0")
        if self.storage_ttl_seconds <= 0:
            raise ConfigurationError("EV_CONSOLE_STORAGE_TTL_SECONDS must be greater than 0")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigurationError("EV_CONSOLE_LOG_LEVEL must be a standard logging level name")


@lru_cache(maxsize=1)
def get_settings() -> ConsoleSettings:
    return ConsoleSettings.from_env()
