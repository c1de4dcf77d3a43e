from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from ev_console.domain.models import ListPage, LoginResult, Tokens
from ev_console.infra.auth import compute_expires_at, needs_refresh
from ev_console.infra.config import ConsoleSettings
from ev_console.infra.storage import BrowserStorage, StorageError

logger = logging.getLogger(__name__)

TOKENS_KEY = "evsc:tokens"
DEFAULT_ERROR_MESSAGE = "Could not reach the service center backend. Please try again."
SESSION_EXPIRED_MESSAGE = "Your session has expired. Please sign in again."


class GatewayError(Exception):
    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(GatewayError):
    pass


class ApiError(GatewayError):
    pass


class HttpTransport(Protocol):
    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response: ...


class TokenStore:
    def __init__(self, storage: BrowserStorage) -> None:
        self._storage = storage

    def load(self) -> Tokens | None:
        try:
            raw = self._storage.get_item(TOKENS_KEY)
        except StorageError:
            logger.warning("token storage unavailable")
            return None
        if not raw:
            return None
        try:
            return Tokens.model_validate_json(raw)
        except (ValidationError, ValueError):
            return None

    def save(self, tokens: Tokens | None) -> None:
        if tokens is None:
            self._storage.remove_item(TOKENS_KEY)
            return
        self._storage.set_item(TOKENS_KEY, tokens.model_dump_json())


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail") or body.get("error")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return f"HTTP {response.status_code}"


def _is_success(response: httpx.Response) -> bool:
    return 200 <= int(response.status_code) < 300


def _unwrap_data(body: Any) -> Any:
    if isinstance(body, dict) and "data" in body:
        return body["data"]
    return body


class ApiGateway:
    """Single point through which every backend call flows."""

    def __init__(
        self,
        settings: ConsoleSettings,
        token_store: TokenStore,
        *,
        http: HttpTransport | None = None,
        on_unauthorized: Callable[[], None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings
        self._tokens = token_store
        self._http = http if http is not None else self._new_client()
        self._on_unauthorized = on_unauthorized
        self._clock = clock

    @staticmethod
    def _new_client() -> httpx.Client:
        return httpx.Client(headers={"Accept": "application/json"})

    def _url(self, path: str) -> str:
        normalized = path if path.startswith("/") else f"/{path}"
        return f"{self._settings.api_base_url}{normalized}"

    def _send(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        token: str | None = None,
    ) -> httpx.Response:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return self._http.request(
                method,
                self._url(path),
                params=params,
                json=payload,
                headers=headers,
                timeout=self._settings.request_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("backend request failed: %s %s (%s)", method, path, exc)
            raise ApiError(DEFAULT_ERROR_MESSAGE, status_code=0) from exc

    @staticmethod
    def _json_body(response: httpx.Response) -> Any:
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            message = "The backend returned an unreadable response."
            raise ApiError(message, status_code=response.status_code) from exc

    def _expires_at(self, access_token: str, data: dict[str, Any]) -> float:
        return compute_expires_at(access_token, data.get("expiresIn"), now=self._clock())

    def _handle_unauthorized(self) -> None:
        self._tokens.save(None)
        if self._on_unauthorized is not None:
            self._on_unauthorized()

    def _ensure_fresh_access_token(self) -> None:
        tokens = self._tokens.load()
        if tokens is None or not tokens.refresh_token:
            return
        if not needs_refresh(tokens.access_token_expires_at, now=self._clock()):
            return
        try:
            self.refresh_tokens()
        except AuthError:
            # the request below answers 401 and is handled there
            logger.info("proactive token refresh failed")

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
        retry_unauthorized: bool = True,
    ) -> Any:
        self._ensure_fresh_access_token()
        tokens = self._tokens.load()
        response = self._send(
            method,
            path,
            params=params,
            payload=payload,
            token=tokens.access_token if tokens else None,
        )

        if response.status_code == 401:
            if not retry_unauthorized or tokens is None or not tokens.refresh_token:
                self._handle_unauthorized()
                raise AuthError(SESSION_EXPIRED_MESSAGE, status_code=401)
            self.refresh_tokens()
            return self._request(method, path, params=params, payload=payload, retry_unauthorized=False)

        if not _is_success(response):
            message = _error_message(response)
            logger.info("backend rejected %s %s: %s", method, path, message)
            raise ApiError(message, status_code=response.status_code)
        return self._json_body(response)

    def login(self, identifier: str, password: str) -> LoginResult:
        response = self._send(
            "POST",
            "/auth/login-by-password",
            payload={"identifier": identifier, "password": password},
        )
        if not _is_success(response):
            raise AuthError(_error_message(response), status_code=response.status_code)

        body = self._json_body(response)
        data = _unwrap_data(body)
        if not isinstance(data, dict) or not data.get("accessToken"):
            raise AuthError("The backend returned an invalid login response.", status_code=response.status_code)

        access_token = str(data["accessToken"])
        tokens = Tokens(
            access_token=access_token,
            refresh_token=data.get("refreshToken"),
            access_token_expires_at=self._expires_at(access_token, data),
        )
        self._tokens.save(tokens)
        message = body.get("message", "") if isinstance(body, dict) else ""
        return LoginResult(tokens=tokens, role=str(data.get("role") or ""), message=str(message or ""))

    def refresh_tokens(self) -> Tokens:
        tokens = self._tokens.load()
        if tokens is None or not tokens.refresh_token:
            self._handle_unauthorized()
            raise AuthError(SESSION_EXPIRED_MESSAGE, status_code=401)

        try:
            response = self._send(
                "POST",
                "/auth/refresh-token",
                payload={"refreshToken": tokens.refresh_token},
            )
        except ApiError as exc:
            self._handle_unauthorized()
            raise AuthError(SESSION_EXPIRED_MESSAGE, status_code=exc.status_code) from exc

        if not _is_success(response):
            self._handle_unauthorized()
            raise AuthError(SESSION_EXPIRED_MESSAGE, status_code=response.status_code)

        data = _unwrap_data(self._json_body(response))
        if not isinstance(data, dict) or not data.get("accessToken"):
            self._handle_unauthorized()
            raise AuthError(SESSION_EXPIRED_MESSAGE, status_code=response.status_code)

        access_token = str(data["accessToken"])
        refreshed = Tokens(
            access_token=access_token,
            refresh_token=data.get("refreshToken") or tokens.refresh_token,
            access_token_expires_at=self._expires_at(access_token, data),
        )
        self._tokens.save(refreshed)
        logger.debug("access token refreshed")
        return refreshed

    def logout(self) -> None:
        tokens = self._tokens.load()
        try:
            if tokens is not None:
                self._send("POST", "/auth/logout", token=tokens.access_token)
        except ApiError:
            logger.info("backend logout call failed, clearing local tokens anyway")
        finally:
            self._tokens.save(None)

    def get_profile(self) -> dict[str, Any]:
        data = _unwrap_data(self._request("GET", "/auth/profile"))
        if not isinstance(data, dict):
            raise ApiError("The backend returned an invalid profile.", status_code=200)
        return data

    def register_staff(self, payload: dict[str, Any]) -> str:
        body = self._request("POST", "/auth/register-staff", payload=payload)
        if isinstance(body, dict):
            return str(body.get("message") or "")
        return ""

    def list_records(
        self,
        path: str,
        *,
        page: int,
        limit: int,
        list_key: str | None = None,
        params: dict[str, Any] | None = None,
    ) -> ListPage:
        query: dict[str, Any] = {"page": page, "limit": limit}
        if params:
            query.update({key: value for key, value in params.items() if value not in (None, "")})
        data = _unwrap_data(self._request("GET", path, params=query))

        try:
            if isinstance(data, list):
                start = (page - 1) * limit
                return ListPage(items=data[start : start + limit], total=len(data))

            if isinstance(data, dict):
                items = data.get("items")
                if items is None and list_key:
                    items = data.get(list_key)
                if isinstance(items, list):
                    total = data.get("total")
                    if not isinstance(total, int) or total < 0:
                        total = len(items)
                    return ListPage(items=items, total=total)
        except ValidationError as exc:
            # rows that are not objects
            raise ApiError("The backend returned an unexpected list response.", status_code=200) from exc

        raise ApiError("The backend returned an unexpected list response.", status_code=200)

    @staticmethod
    def _record_from(body: Any, record_key: str | None) -> dict[str, Any]:
        data = _unwrap_data(body)
        if record_key and isinstance(data, dict) and isinstance(data.get(record_key), dict):
            data = data[record_key]
        if not isinstance(data, dict):
            raise ApiError("The backend returned an unexpected record.", status_code=200)
        return data

    def get_record(self, path: str, record_id: str, *, record_key: str | None = None) -> dict[str, Any]:
        return self._record_from(self._request("GET", f"{path}/{record_id}"), record_key)

    def create_record(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        record_key: str | None = None,
    ) -> dict[str, Any]:
        return self._record_from(self._request("POST", path, payload=payload), record_key)

    def update_record(
        self,
        path: str,
        record_id: str,
        payload: dict[str, Any],
        *,
        method: str = "PATCH",
        record_key: str | None = None,
    ) -> dict[str, Any]:
        body = self._request(method, f"{path}/{record_id}", payload=payload)
        return self._record_from(body, record_key)

    def delete_record(self, path: str, record_id: str) -> None:
        self._request("DELETE", f"{path}/{record_id}")
