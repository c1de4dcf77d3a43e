from __future__ import annotations

from collections.abc import Awaitable, Callable, Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine, select

from ev_console import main as app_main
from ev_console.api import deps
from ev_console.domain.models import AuditLog
from ev_console.infra import db, storage

ACCOUNTS: dict[str, tuple[str, str]] = {
    "staff@center.vn": ("STAFF", "Tran Thi Lan"),
    "admin@center.vn": ("ADMIN", "Le Van Minh"),
    "customer@center.vn": ("CUSTOMER", "Pham Hoa"),
    "boss@center.vn": ("MANAGER", "Boss"),
}


class FakeRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def set(self, key: str, value: str, ex: int | None = None) -> bool:
        self._store[key] = value
        return True

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def delete(self, key: str) -> int:
        return 1 if self._store.pop(key, None) is not None else 0

    def ping(self) -> bool:
        return True


@dataclass
class Backend:
    app: FastAPI
    calls: list[dict[str, Any]] = field(default_factory=list)
    tokens: dict[str, str] = field(default_factory=dict)
    appointments: list[dict[str, Any]] = field(default_factory=list)
    registered: list[dict[str, Any]] = field(default_factory=list)
    payloads: list[dict[str, Any]] = field(default_factory=list)


def _appointment(record_id: str, customer: str) -> dict[str, Any]:
    return {
        "_id": record_id,
        "customer_id": {"_id": f"cus-{record_id}", "customerName": customer},
        "vehicle_id": {"_id": f"veh-{record_id}", "vehicleName": "VinFast VF8"},
        "center_id": {"_id": "center-1", "name": "EV Center Hanoi"},
        "startTime": "2026-10-20T02:00:00.000Z",
        "endTime": "2026-10-20T03:00:00.000Z",
        "status": "pending",
    }


def _build_backend() -> Backend:
    app = FastAPI()
    backend = Backend(app=app)
    backend.appointments = [_appointment("a1", "Nguyen Van An"), _appointment("a2", "Do Thi Binh")]

    def _identifier(request: Request) -> str | None:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        return backend.tokens.get(token)

    @app.middleware("http")
    async def _record(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        backend.calls.append(
            {"method": request.method, "path": request.url.path, "query": dict(request.query_params)}
        )
        return await call_next(request)

    @app.post("/api/auth/login-by-password")
    async def login(request: Request) -> JSONResponse:
        body = await request.json()
        account = ACCOUNTS.get(body.get("identifier", ""))
        if account is None or body.get("password") != "secret":
            return JSONResponse({"message": "Invalid email or password"}, status_code=401)
        access = f"access-{len(backend.tokens)}"
        backend.tokens[access] = body["identifier"]
        return JSONResponse(
            {"data": {"accessToken": access, "refreshToken": "refresh", "expiresIn": 3600, "role": account[0]}}
        )

    @app.post("/api/auth/refresh-token")
    def refresh() -> JSONResponse:
        return JSONResponse({"message": "Invalid refresh token"}, status_code=401)

    @app.post("/api/auth/logout")
    def logout() -> JSONResponse:
        return JSONResponse({"message": "Logged out"})

    @app.post("/api/auth/register-staff")
    async def register_staff(request: Request) -> JSONResponse:
        if _identifier(request) is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        body = await request.json()
        backend.registered.append(body)
        return JSONResponse({"message": "Staff registered"}, status_code=201)

    @app.get("/api/auth/profile")
    def profile(request: Request) -> JSONResponse:
        identifier = _identifier(request)
        if identifier is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        return JSONResponse({"data": {"name": ACCOUNTS[identifier][1], "centerId": "center-1"}})

    @app.get("/api/appointments")
    def list_appointments(request: Request) -> JSONResponse:
        if _identifier(request) is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        return JSONResponse({"data": {"appointments": backend.appointments, "total": len(backend.appointments)}})

    @app.post("/api/appointments")
    async def create_appointment(request: Request) -> JSONResponse:
        if _identifier(request) is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        body = await request.json()
        backend.payloads.append(body)
        record = {**_appointment("a3", "Vu Thi Cuc"), "status": body["status"]}
        backend.appointments.insert(0, record)
        return JSONResponse({"data": record}, status_code=201)

    @app.put("/api/appointments/{record_id}")
    async def update_appointment(record_id: str, request: Request) -> JSONResponse:
        if _identifier(request) is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        body = await request.json()
        backend.payloads.append(body)
        current = next(item for item in backend.appointments if item["_id"] == record_id)
        return JSONResponse({"data": {**current, **body}})

    @app.delete("/api/appointments/{record_id}")
    def delete_appointment(record_id: str, request: Request) -> JSONResponse:
        if _identifier(request) is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        backend.appointments = [item for item in backend.appointments if item["_id"] != record_id]
        return JSONResponse({"message": "Deleted"})

    @app.get("/api/{collection}")
    def list_other(collection: str, request: Request) -> JSONResponse:
        if _identifier(request) is None:
            return JSONResponse({"message": "Unauthorized"}, status_code=401)
        return JSONResponse({"data": {"items": [], "total": 7}})

    return backend


@pytest.fixture()
def backend() -> Backend:
    return _build_backend()


@pytest.fixture()
def ui_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    backend: Backend,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "ui_console_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    fake_redis = FakeRedis()
    backend_client = TestClient(backend.app)

    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(storage, "get_redis", lambda: fake_redis)
    app_main.app.dependency_overrides[deps.get_http_transport] = lambda: backend_client

    client = TestClient(app_main.app)
    yield client
    client.close()
    backend_client.close()
    app_main.app.dependency_overrides.clear()


def _login(client: TestClient, identifier: str, *, next_path: str = "") -> Any:
    login_page = client.get("/login", params={"next": next_path} if next_path else None)
    assert login_page.status_code == 200
    csrf_token = client.cookies.get(deps.CSRF_COOKIE_NAME)
    assert csrf_token
    return client.post(
        "/login",
        data={"identifier": identifier, "password": "secret", "csrf_token": csrf_token, "next": next_path},
        follow_redirects=False,
    )


def _audit_rows() -> list[AuditLog]:
    with Session(db.engine) as session:
        return list(session.exec(select(AuditLog)).all())


def test_anonymous_staff_round_trip_to_appointments(ui_client: TestClient, backend: Backend) -> None:
    first = ui_client.get("/appointments", follow_redirects=False)
    assert first.status_code == 303
    assert first.headers["location"] == "/login?next=/appointments"
    assert ui_client.cookies.get(deps.BROWSER_COOKIE_NAME)

    login = _login(ui_client, "staff@center.vn", next_path="/appointments")
    assert login.status_code == 303
    assert login.headers["location"] == "/appointments"

    page = ui_client.get("/appointments")
    assert page.status_code == 200
    list_calls = [call for call in backend.calls if call["path"] == "/api/appointments"]
    assert list_calls[-1]["query"] == {"page": "1", "limit": "20"}
    assert "Nguyen Van An" in page.text
    assert "Do Thi Binh" in page.text
    assert "Tran Thi Lan" in page.text
    assert "/appointments/a1/edit" in page.text
    assert "/delete" not in page.text


def test_remounting_list_uses_stored_state_until_refresh(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")

    ui_client.get("/appointments")
    ui_client.get("/appointments?q=binh")
    list_calls = [call for call in backend.calls if call["path"] == "/api/appointments"]
    assert len(list_calls) == 1

    filtered = ui_client.get("/appointments?q=binh")
    assert "Do Thi Binh" in filtered.text
    assert "Nguyen Van An" not in filtered.text

    ui_client.get("/appointments?refresh=1")
    list_calls = [call for call in backend.calls if call["path"] == "/api/appointments"]
    assert len(list_calls) == 2


def test_staff_cannot_open_delete_confirmation(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")
    ui_client.get("/appointments")

    response = ui_client.get("/appointments/a1/delete", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/appointments"
    assert not [call for call in backend.calls if call["method"] == "DELETE"]


def test_admin_delete_after_confirmation_patches_list(ui_client: TestClient, backend: Backend) -> None:
    login = _login(ui_client, "admin@center.vn")
    assert login.headers["location"] == "/admin"

    listing = ui_client.get("/appointments")
    assert "/appointments/a1/delete" in listing.text

    confirm = ui_client.get("/appointments/a1/delete")
    assert confirm.status_code == 200
    assert "Nguyen Van An" in confirm.text

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    deleted = ui_client.post(
        "/appointments/a1/delete",
        data={"csrf_token": csrf_token, "action": "confirm"},
        follow_redirects=False,
    )
    assert deleted.status_code == 303
    assert deleted.headers["location"] == "/appointments"
    assert [call["path"] for call in backend.calls if call["method"] == "DELETE"] == ["/api/appointments/a1"]

    after = ui_client.get("/appointments")
    assert "Appointment deleted" in after.text
    assert "/appointments/a1/edit" not in after.text
    assert "/appointments/a2/edit" in after.text
    assert len([call for call in backend.calls if call["path"] == "/api/appointments"]) == 1

    rows = _audit_rows()
    actions = {row.action for row in rows}
    assert "auth.login" in actions
    assert "appointments.delete" in actions
    delete_row = next(row for row in rows if row.action == "appointments.delete")
    assert delete_row.actor == "Le Van Minh"
    assert delete_row.center_id == "center-1"


def test_cancelled_delete_calls_nothing(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "admin@center.vn")
    ui_client.get("/appointments")

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    response = ui_client.post(
        "/appointments/a1/delete",
        data={"csrf_token": csrf_token, "action": "cancel"},
        follow_redirects=False,
    )

    assert response.status_code == 303
    assert not [call for call in backend.calls if call["method"] == "DELETE"]
    assert "/appointments/a1/edit" in ui_client.get("/appointments").text


def test_admin_home_shows_totals(ui_client: TestClient) -> None:
    _login(ui_client, "admin@center.vn")

    home = ui_client.get("/admin")

    assert home.status_code == 200
    assert "Admin overview" in home.text
    assert "Recent console activity" in home.text
    assert "auth.login" in home.text


def test_wrong_role_is_sent_to_generic_home(ui_client: TestClient) -> None:
    login = _login(ui_client, "customer@center.vn")
    assert login.headers["location"] == "/"

    response = ui_client.get("/admin", follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["location"] == "/"

    home = ui_client.get("/")
    assert home.status_code == 200
    assert "no console workspace" in home.text


def test_unknown_backend_role_is_rejected(ui_client: TestClient) -> None:
    response = _login(ui_client, "boss@center.vn")

    assert response.status_code == 401
    assert "This account cannot use the service center console." in response.text
    assert ui_client.get("/appointments", follow_redirects=False).headers["location"] == "/login?next=/appointments"


def test_wrong_password_shows_backend_message(ui_client: TestClient) -> None:
    ui_client.get("/login")
    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)

    response = ui_client.post(
        "/login",
        data={"identifier": "staff@center.vn", "password": "nope", "csrf_token": csrf_token},
    )

    assert response.status_code == 401
    assert "Invalid email or password" in response.text


def test_login_rejects_bad_csrf_token(ui_client: TestClient) -> None:
    ui_client.get("/login")

    response = ui_client.post(
        "/login",
        data={"identifier": "staff@center.vn", "password": "secret", "csrf_token": "forged"},
    )

    assert response.status_code == 400
    assert "invalid csrf token" in response.text


def test_external_next_path_is_ignored(ui_client: TestClient) -> None:
    response = _login(ui_client, "staff@center.vn", next_path="https://evil.example/phish")

    assert response.headers["location"] == "/staff-home"


def test_logout_clears_session(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")
    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)

    response = ui_client.post("/logout", data={"csrf_token": csrf_token}, follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/login"
    assert "/api/auth/logout" in [call["path"] for call in backend.calls]
    assert ui_client.get("/staff-home", follow_redirects=False).headers["location"] == "/login?next=/staff-home"


def test_expired_backend_session_logs_out_and_redirects(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")
    backend.tokens.clear()

    response = ui_client.get("/appointments", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/login?next=/appointments"
    assert ui_client.get("/staff-home", follow_redirects=False).headers["location"] == "/login?next=/staff-home"


def test_unknown_resource_is_not_found(ui_client: TestClient) -> None:
    _login(ui_client, "admin@center.vn")

    assert ui_client.get("/spaceships").status_code == 404


def test_unknown_resource_sends_anonymous_visitor_to_login(ui_client: TestClient) -> None:
    response = ui_client.get("/spaceships", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/login?next=/spaceships"


def test_admin_registers_staff_account(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "admin@center.vn")
    form = ui_client.get("/register")
    assert form.status_code == 200

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    response = ui_client.post(
        "/register",
        data={
            "email": "tech@center.vn",
            "password": "tech-pass",
            "role": "TECHNICIAN",
            "centerId": "center-1",
            "csrf_token": csrf_token,
        },
    )

    assert response.status_code == 200
    assert "Staff registered" in response.text
    assert backend.registered == [
        {"email": "tech@center.vn", "password": "tech-pass", "role": "TECHNICIAN", "centerId": "center-1"}
    ]


def test_staff_cannot_open_registration(ui_client: TestClient) -> None:
    _login(ui_client, "staff@center.vn")

    response = ui_client.get("/register", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"] == "/"


def _list_calls(backend: Backend) -> list[dict[str, Any]]:
    return [call for call in backend.calls if call["method"] == "GET" and call["path"] == "/api/appointments"]


def test_expired_session_does_not_leak_pages_into_next_login(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "admin@center.vn")
    assert "Nguyen Van An" in ui_client.get("/appointments").text
    backend.tokens.clear()

    expired = ui_client.get("/centers", follow_redirects=False)
    assert expired.headers["location"] == "/login?next=/centers"

    backend.appointments = [_appointment("a9", "Hoang Van Cuong")]
    _login(ui_client, "staff@center.vn")
    page = ui_client.get("/appointments")

    assert len(_list_calls(backend)) == 2
    assert "Hoang Van Cuong" in page.text
    assert "Nguyen Van An" not in page.text


def test_login_over_existing_session_reloads_pages(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "admin@center.vn")
    ui_client.get("/appointments")
    backend.appointments = [_appointment("a9", "Hoang Van Cuong")]

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    login = ui_client.post(
        "/login",
        data={"identifier": "staff@center.vn", "password": "secret", "csrf_token": csrf_token},
        follow_redirects=False,
    )
    assert login.headers["location"] == "/staff-home"

    page = ui_client.get("/appointments")
    assert len(_list_calls(backend)) == 2
    assert "Hoang Van Cuong" in page.text
    assert "Nguyen Van An" not in page.text


def test_logout_forgets_loaded_pages(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "admin@center.vn")
    ui_client.get("/appointments")
    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    ui_client.post("/logout", data={"csrf_token": csrf_token}, follow_redirects=False)

    _login(ui_client, "admin@center.vn")
    ui_client.get("/appointments")

    assert len(_list_calls(backend)) == 2


def test_staff_creates_appointment_without_refetching(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")
    ui_client.get("/appointments")
    form = ui_client.get("/appointments/new")
    assert form.status_code == 200
    assert 'name="staffId"' in form.text

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    created = ui_client.post(
        "/appointments/new",
        data={
            "staffId": "staff-1",
            "customer_id": "",
            "vehicle_id": "veh-a3",
            "center_id": "center-1",
            "startTime": "2026-10-21T09:00",
            "endTime": "2026-10-21T10:00",
            "status": "pending",
            "csrf_token": csrf_token,
        },
        follow_redirects=False,
    )
    assert created.status_code == 303
    assert created.headers["location"] == "/appointments"
    assert backend.payloads == [
        {
            "staffId": "staff-1",
            "vehicle_id": "veh-a3",
            "center_id": "center-1",
            "startTime": "2026-10-21T09:00",
            "endTime": "2026-10-21T10:00",
            "status": "pending",
        }
    ]

    listing = ui_client.get("/appointments")
    assert "Appointment created" in listing.text
    assert listing.text.index("/appointments/a3/edit") < listing.text.index("/appointments/a1/edit")
    assert len(_list_calls(backend)) == 1
    assert "appointments.create" in {row.action for row in _audit_rows()}


def test_invalid_appointment_form_is_shown_again(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")
    ui_client.get("/appointments")

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    response = ui_client.post(
        "/appointments/new",
        data={"vehicle_id": "veh-a3", "status": "pending", "csrf_token": csrf_token},
    )

    assert response.status_code == 400
    assert "Staff ID is required" in response.text
    assert 'value="veh-a3"' in response.text
    assert not [call for call in backend.calls if call["method"] == "POST" and call["path"] == "/api/appointments"]


def test_staff_updates_appointment_in_place(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")
    ui_client.get("/appointments")
    form = ui_client.get("/appointments/a2/edit")
    assert form.status_code == 200
    assert 'value="veh-a2"' in form.text

    csrf_token = ui_client.cookies.get(deps.CSRF_COOKIE_NAME)
    updated = ui_client.post(
        "/appointments/a2/edit",
        data={"status": "confirmed", "csrf_token": csrf_token},
        follow_redirects=False,
    )
    assert updated.status_code == 303
    assert [call["path"] for call in backend.calls if call["method"] == "PUT"] == ["/api/appointments/a2"]
    assert backend.payloads == [{"status": "confirmed"}]

    listing = ui_client.get("/appointments")
    assert "Appointment updated" in listing.text
    assert "confirmed" in listing.text
    assert listing.text.index("/appointments/a1/edit") < listing.text.index("/appointments/a2/edit")
    assert len(_list_calls(backend)) == 1


def test_pagination_links_keep_the_filter(ui_client: TestClient, backend: Backend) -> None:
    backend.appointments = [_appointment(f"a{index}", f"Customer {index}") for index in range(45)]
    _login(ui_client, "admin@center.vn")
    ui_client.get("/appointments")

    page = ui_client.get("/appointments?q=customer 1")

    assert 'href="/appointments?page=2&amp;q=customer%201"' in page.text
    assert 'href="/appointments?refresh=1&amp;page=1&amp;q=customer%201"' in page.text


def test_center_inventory_page_lists_from_backend(ui_client: TestClient, backend: Backend) -> None:
    _login(ui_client, "staff@center.vn")

    page = ui_client.get("/center-auto-parts")

    assert page.status_code == 200
    assert "Center inventory" in page.text
    assert "/center-auto-parts/new" in page.text
    calls = [call for call in backend.calls if call["path"] == "/api/center-auto-parts"]
    assert calls[-1]["query"] == {"page": "1", "limit": "20"}
