from __future__ import annotations

from functools import lru_cache
from typing import Protocol

from redis import Redis
from redis.exceptions import RedisError

from ev_console.infra.config import get_settings

KEY_PREFIX = "evconsole"


class StorageError(Exception):
    pass


class BrowserStorage(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(get_settings().redis_url, decode_responses=True)


def check_storage_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class RedisBrowserStorage:
    """Durable key/value slot scoped to one browser, kept in Redis."""

    def __init__(self, browser_id: str, *, ttl_seconds: int | None = None) -> None:
        self._browser_id = browser_id
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else get_settings().storage_ttl_seconds

    @property
    def browser_id(self) -> str:
        return self._browser_id

    def _key(self, key: str) -> str:
        return f"{KEY_PREFIX}:{self._browser_id}:{key}"

    def get_item(self, key: str) -> str | None:
        try:
            raw = get_redis().get(self._key(key))
        except RedisError as exc:
            raise StorageError(f"storage read failed: {key}") from exc
        if isinstance(raw, bytes):
            raw = raw.decode()
        if raw is not None and not isinstance(raw, str):
            return None
        return raw

    def set_item(self, key: str, value: str) -> None:
        try:
            get_redis().set(self._key(key), value, ex=self._ttl_seconds)
        except RedisError as exc:
            raise StorageError(f"storage write failed: {key}") from exc

    def remove_item(self, key: str) -> None:
        try:
            get_redis().delete(self._key(key))
        except RedisError as exc:
            raise StorageError(f"storage delete failed: {key}") from exc


class MemoryBrowserStorage:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._items: dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)
