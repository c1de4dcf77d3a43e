from __future__ import annotations

from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass, field
from typing import Any

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from fastapi.testclient import TestClient

from ev_console.domain.models import Tokens
from ev_console.infra.config import ConsoleSettings
from ev_console.infra.storage import MemoryBrowserStorage
from ev_console.services.gateway import (
    DEFAULT_ERROR_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    ApiError,
    ApiGateway,
    AuthError,
    TokenStore,
)

NOW = 1_800_000_000.0


def _settings() -> ConsoleSettings:
    return ConsoleSettings(
        api_base_url="http://backend.test/api",
        request_timeout_seconds=5,
        page_limit=20,
        redis_url="redis://localhost:6379/0",
        database_url="sqlite://",
        storage_ttl_seconds=3600,
        cookie_secure=False,
        log_level="INFO",
        audit_enabled=False,
    )


@dataclass
class Backend:
    app: FastAPI
    calls: list[dict[str, Any]] = field(default_factory=list)
    valid_tokens: set[str] = field(default_factory=lambda: {"access-1"})
    refresh_ok: bool = True
    appointments: list[dict[str, Any]] = field(default_factory=list)


def _build_backend() -> Backend:
    app = FastAPI()
    backend = Backend(app=app)
    backend.appointments = [{"_id": f"a{index}", "status": "pending"} for index in range(45)]

    def _authorized(request: Request) -> bool:
        header = request.headers.get("Authorization", "")
        return header.removeprefix("Bearer ") in backend.valid_tokens

    @app.middleware("http")
    async def _record(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        backend.calls.append(
            {
                "method": request.method,
                "path": request.url.path,
                "query": dict(request.query_params),
                "authorization": request.headers.get("Authorization"),
            }
        )
        return await call_next(request)

    @app.post("/api/auth/login-by-password")
    async def login(request: Request) -> JSONResponse:
        body = await request.json()
        if body.get("password") != "secret":
            return JSONResponse({"message": "Invalid email or password"}, status_code=401)
        return JSONResponse(
            {
                "message": "Login successful",
                "data": {"accessToken": "access-1", "refreshToken": "refresh-1", "expiresIn": 3600, "role": "STAFF"},
            }
        )

    @app.post("/api/auth/refresh-token")
    async def refresh(request: Request) -> JSONResponse:
        body = await request.json()
        if not backend.refresh_ok or body.get("refreshToken") != "refresh-1":
            return JSONResponse({"message": "Invalid refresh token"}, status_code=401)
        backend.valid_tokens = {"access-2"}
        return JSONResponse({"data": {"accessToken": "access-2", "expiresIn": 3600}})

    @app.get("/api/appointments")
    def appointments(request: Request, page: int = 1, limit: int = 20) -> JSONResponse:
        if not _authorized(request):
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        start = (page - 1) * limit
        return JSONResponse(
            {"data": {"appointments": backend.appointments[start : start + limit], "total": len(backend.appointments)}}
        )

    @app.get("/api/service-packages")
    def packages(request: Request) -> JSONResponse:
        if not _authorized(request):
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        return JSONResponse({"data": [{"_id": f"p{index}", "name": f"Package {index}"} for index in range(7)]})

    @app.get("/api/malformed/{shape}")
    def malformed(shape: str) -> JSONResponse:
        bodies: dict[str, Any] = {
            "wrapped": {"data": {"items": ["a1", "a2"], "total": 2}},
            "bare": {"data": ["a1", 2]},
        }
        return JSONResponse(bodies[shape])

    @app.post("/api/payments")
    async def create_payment(request: Request) -> JSONResponse:
        body = await request.json()
        return JSONResponse(
            {"message": "created", "data": {"payment": {"_id": "pay-1", **body}, "checkoutUrl": "https://pay"}},
            status_code=201,
        )

    @app.get("/api/errors/{kind}")
    def errors(kind: str) -> JSONResponse:
        bodies: dict[str, Any] = {
            "message": {"message": "Center not found"},
            "detail": {"detail": "Bad filter"},
            "error": {"error": "Conflict"},
            "empty": {},
        }
        return JSONResponse(bodies[kind], status_code=418)

    return backend


@pytest.fixture()
def backend() -> Generator[Backend, None, None]:
    yield _build_backend()


@pytest.fixture()
def http(backend: Backend) -> Generator[TestClient, None, None]:
    client = TestClient(backend.app)
    yield client
    client.close()


def _gateway(
    http: TestClient,
    storage: MemoryBrowserStorage,
    *,
    on_unauthorized: Any = None,
) -> ApiGateway:
    return ApiGateway(
        _settings(),
        TokenStore(storage),
        http=http,
        on_unauthorized=on_unauthorized,
        clock=lambda: NOW,
    )


def _store_tokens(storage: MemoryBrowserStorage, *, access: str, expires_in: float) -> None:
    TokenStore(storage).save(
        Tokens(access_token=access, refresh_token="refresh-1", access_token_expires_at=NOW + expires_in)
    )


def test_login_stores_tokens_and_returns_role(http: TestClient) -> None:
    storage = MemoryBrowserStorage()
    result = _gateway(http, storage).login("lan@center.vn", "secret")

    assert result.role == "STAFF"
    assert result.message == "Login successful"
    tokens = TokenStore(storage).load()
    assert tokens is not None
    assert tokens.access_token == "access-1"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.access_token_expires_at == NOW + 3600


def test_login_failure_raises_auth_error_with_backend_message(http: TestClient) -> None:
    storage = MemoryBrowserStorage()
    with pytest.raises(AuthError) as exc_info:
        _gateway(http, storage).login("lan@center.vn", "wrong")
    assert exc_info.value.message == "Invalid email or password"
    assert TokenStore(storage).load() is None


def test_requests_carry_bearer_token(http: TestClient, backend: Backend) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)

    _gateway(http, storage).list_records("/appointments", page=1, limit=20, list_key="appointments")

    assert backend.calls[-1]["authorization"] == "Bearer access-1"
    assert backend.calls[-1]["query"] == {"page": "1", "limit": "20"}


def test_token_close_to_expiry_is_refreshed_before_the_call(http: TestClient, backend: Backend) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=5)

    _gateway(http, storage).list_records("/appointments", page=1, limit=20, list_key="appointments")

    assert [call["path"] for call in backend.calls] == ["/api/auth/refresh-token", "/api/appointments"]
    assert backend.calls[-1]["authorization"] == "Bearer access-2"
    tokens = TokenStore(storage).load()
    assert tokens is not None
    assert tokens.access_token == "access-2"
    assert tokens.refresh_token == "refresh-1"


def test_unauthorized_response_refreshes_once_and_retries(http: TestClient, backend: Backend) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)
    backend.valid_tokens = {"access-2"}

    page = _gateway(http, storage).list_records("/appointments", page=1, limit=20, list_key="appointments")

    assert len(page.items) == 20
    assert [call["path"] for call in backend.calls] == [
        "/api/appointments",
        "/api/auth/refresh-token",
        "/api/appointments",
    ]


def test_failed_refresh_clears_tokens_and_signals_unauthorized(http: TestClient, backend: Backend) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)
    backend.valid_tokens = set()
    backend.refresh_ok = False
    signals: list[str] = []

    gateway = _gateway(http, storage, on_unauthorized=lambda: signals.append("logout"))
    with pytest.raises(AuthError) as exc_info:
        gateway.list_records("/appointments", page=1, limit=20, list_key="appointments")

    assert exc_info.value.message == SESSION_EXPIRED_MESSAGE
    assert signals
    assert TokenStore(storage).load() is None


@pytest.mark.parametrize(
    ("kind", "expected"),
    [
        ("message", "Center not found"),
        ("detail", "Bad filter"),
        ("error", "Conflict"),
        ("empty", "HTTP 418"),
    ],
)
def test_error_messages_are_normalized(http: TestClient, kind: str, expected: str) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)

    with pytest.raises(ApiError) as exc_info:
        _gateway(http, storage).get_record("/errors", kind)

    assert exc_info.value.message == expected
    assert exc_info.value.status_code == 418


def test_paginated_list_reports_backend_total(http: TestClient) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)
    gateway = _gateway(http, storage)

    first = gateway.list_records("/appointments", page=1, limit=20, list_key="appointments")
    last = gateway.list_records("/appointments", page=3, limit=20, list_key="appointments")

    assert first.total == 45
    assert len(first.items) == 20
    assert len(last.items) == 5
    assert last.items[0]["_id"] == "a40"


def test_bare_array_is_sliced_locally(http: TestClient) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)

    page = _gateway(http, storage).list_records("/service-packages", page=2, limit=5)

    assert page.total == 7
    assert [item["_id"] for item in page.items] == ["p5", "p6"]


@pytest.mark.parametrize("shape", ["wrapped", "bare"])
def test_list_rows_that_are_not_objects_raise_api_error(http: TestClient, shape: str) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)

    with pytest.raises(ApiError) as exc_info:
        _gateway(http, storage).list_records(f"/malformed/{shape}", page=1, limit=20)

    assert exc_info.value.message == "The backend returned an unexpected list response."
    assert exc_info.value.status_code == 200


def test_created_record_is_unwrapped_by_record_key(http: TestClient) -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)

    record = _gateway(http, storage).create_record(
        "/payments",
        {"amount": 150000, "payment_type": "appointment"},
        record_key="payment",
    )

    assert record == {"_id": "pay-1", "amount": 150000, "payment_type": "appointment"}


class FailingTransport:
    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=httpx.Request(method, url))


def test_transport_failure_becomes_api_error() -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)
    gateway = ApiGateway(_settings(), TokenStore(storage), http=FailingTransport(), clock=lambda: NOW)

    with pytest.raises(ApiError) as exc_info:
        gateway.list_records("/appointments", page=1, limit=20)

    assert exc_info.value.message == DEFAULT_ERROR_MESSAGE
    assert exc_info.value.status_code == 0
    assert TokenStore(storage).load() is not None


def test_logout_always_clears_tokens() -> None:
    storage = MemoryBrowserStorage()
    _store_tokens(storage, access="access-1", expires_in=3600)
    gateway = ApiGateway(_settings(), TokenStore(storage), http=FailingTransport(), clock=lambda: NOW)

    gateway.logout()

    assert TokenStore(storage).load() is None
