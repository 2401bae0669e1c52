"""Async HTTP client for the hosted authentication and table service."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import httpx

logger = logging.getLogger("finadmin.backend")

_SINGLE_OBJECT_MEDIA_TYPE = "application/vnd.pgrst.object+json"
_UNIQUE_VIOLATION = "23505"


class BackendError(RuntimeError):
    """Raised when the backend rejects a request or cannot be reached."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(BackendError):
    """Raised for invalid credentials or rejected access tokens."""


class ConflictError(BackendError):
    """Raised when a write collides with existing data, e.g. a duplicate email."""


class NotFoundError(BackendError):
    """Raised when a single-row lookup matches nothing."""


@dataclass(frozen=True)
class AuthUser:
    """Identity issued by the account service."""

    id: str
    email: str


@dataclass(frozen=True)
class BackendSession:
    """Tokens returned by a successful sign-in."""

    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    user: AuthUser


def parse_timestamp(value: object) -> Optional[datetime]:
    """Parse the ISO-8601 timestamps emitted by the table API."""

    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    cleaned = value.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(cleaned)
    except ValueError:
        return None


def _normalize_base_url(base_url: str) -> str:
    cleaned = (base_url or "").strip()
    if not cleaned:
        raise ValueError("Backend base URL must not be empty")
    return cleaned.rstrip("/")


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        for key in ("msg", "message", "error_description", "error", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


def _format_filter_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def _auth_user_from_payload(payload: object) -> AuthUser:
    if not isinstance(payload, dict):
        raise BackendError("Account service returned an unexpected user payload")
    user_id = payload.get("id")
    if not isinstance(user_id, str) or not user_id:
        raise BackendError("Account service response was missing the user id")
    return AuthUser(id=user_id, email=str(payload.get("email") or ""))


def _session_from_payload(payload: Mapping[str, Any]) -> BackendSession:
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise BackendError("Account service response was missing the access token")
    try:
        expires_in = int(payload.get("expires_in") or 3600)
    except (TypeError, ValueError):
        expires_in = 3600
    refresh_token = payload.get("refresh_token")
    return BackendSession(
        access_token=access_token,
        refresh_token=str(refresh_token) if refresh_token else None,
        expires_in=expires_in,
        user=_auth_user_from_payload(payload.get("user")),
    )


class BackendClient:
    """Talk to the account endpoints (``/auth/v1``) and table endpoints (``/rest/v1``)."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        service_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = _normalize_base_url(base_url)
        self._api_key = (api_key or "").strip()
        if not self._api_key:
            raise ValueError("Backend API key must not be empty")
        self._service_key = service_key.strip() if service_key and service_key.strip() else None
        self._timeout = timeout
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def has_service_key(self) -> bool:
        return self._service_key is not None

    def as_service(self) -> "BackendClient":
        """Return a client that authenticates every request with the service key."""

        if self._service_key is None:
            raise BackendError("No service key is configured")
        return BackendClient(
            self._base_url,
            self._service_key,
            service_key=self._service_key,
            timeout=self._timeout,
            transport=self._transport,
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------
    async def sign_in_with_password(self, email: str, password: str) -> BackendSession:
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code in (400, 401):
            payload = self._json_or_none(response)
            raise AuthenticationError(
                _extract_error_message(payload, "Invalid login credentials"),
                status_code=response.status_code,
            )
        self._raise_for_status(response, "Sign-in request failed")
        return _session_from_payload(self._json_object(response))

    async def refresh_session(self, refresh_token: str) -> BackendSession:
        """Exchange a refresh token for a new access token."""

        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        if response.status_code in (400, 401):
            payload = self._json_or_none(response)
            raise AuthenticationError(
                _extract_error_message(payload, "Session expired"),
                status_code=response.status_code,
            )
        self._raise_for_status(response, "Session refresh failed")
        return _session_from_payload(self._json_object(response))

    async def sign_up(self, email: str, password: str) -> Tuple[AuthUser, Optional[BackendSession]]:
        response = await self._request(
            "POST",
            "/auth/v1/signup",
            json={"email": email, "password": password},
        )
        self._raise_for_status(response, "Account creation failed")
        payload = self._json_object(response)
        if payload.get("access_token"):
            session = _session_from_payload(payload)
            return session.user, session
        # Accounts awaiting email confirmation come back as a bare user object.
        user_payload = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        return _auth_user_from_payload(user_payload), None

    async def sign_out(self, access_token: str) -> None:
        response = await self._request("POST", "/auth/v1/logout", access_token=access_token)
        self._raise_for_status(response, "Sign-out request failed")

    async def get_user(self, access_token: str) -> AuthUser:
        response = await self._request("GET", "/auth/v1/user", access_token=access_token)
        self._raise_for_status(response, "Session lookup failed")
        return _auth_user_from_payload(self._json_object(response))

    async def delete_user(self, user_id: str) -> None:
        if self._service_key is None:
            raise BackendError("Deleting accounts requires a service key")
        response = await self._request(
            "DELETE",
            f"/auth/v1/admin/users/{user_id}",
            api_key=self._service_key,
            access_token=self._service_key,
        )
        self._raise_for_status(response, "Account deletion failed")

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------
    async def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, object]] = None,
        order: Optional[str] = None,
        descending: bool = False,
        single: bool = False,
        access_token: Optional[str] = None,
    ) -> Any:
        params: Dict[str, str] = {"select": "*"}
        params.update(self._filter_params(filters))
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        headers = {"Accept": _SINGLE_OBJECT_MEDIA_TYPE} if single else None

        response = await self._request(
            "GET",
            f"/rest/v1/{table}",
            params=params,
            headers=headers,
            access_token=access_token,
        )
        if single and response.status_code == 406:
            raise NotFoundError(f"No matching row in '{table}'", status_code=406)
        self._raise_for_status(response, f"Query on '{table}' failed")
        data = self._json_or_none(response)
        if single:
            if not isinstance(data, dict):
                raise NotFoundError(f"No matching row in '{table}'")
            return data
        if not isinstance(data, list):
            raise BackendError(f"Query on '{table}' returned an unexpected payload")
        return data

    async def insert(
        self,
        table: str,
        rows: Sequence[Mapping[str, object]],
        *,
        upsert: bool = False,
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        prefer = "return=representation"
        if upsert:
            prefer = "resolution=merge-duplicates," + prefer
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=[dict(row) for row in rows],
            headers={"Prefer": prefer},
            access_token=access_token,
        )
        self._raise_for_status(response, f"Insert into '{table}' failed")
        return self._json_rows(response)

    async def update(
        self,
        table: str,
        values: Mapping[str, object],
        *,
        filters: Mapping[str, object],
        access_token: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        if not filters:
            raise ValueError("Updates must be scoped by at least one filter")
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=self._filter_params(filters),
            json=dict(values),
            headers={"Prefer": "return=representation"},
            access_token=access_token,
        )
        self._raise_for_status(response, f"Update of '{table}' failed")
        return self._json_rows(response)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    @staticmethod
    def _filter_params(filters: Optional[Mapping[str, object]]) -> Dict[str, str]:
        if not filters:
            return {}
        return {column: f"eq.{_format_filter_value(value)}" for column, value in filters.items()}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        json: object = None,
        headers: Optional[Mapping[str, str]] = None,
        api_key: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> httpx.Response:
        key = api_key or self._api_key
        request_headers = {
            "apikey": key,
            "Authorization": f"Bearer {access_token or key}",
        }
        if headers:
            request_headers.update(headers)

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers=request_headers,
                )
        except httpx.RequestError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise BackendError(f"Failed to contact backend: {exc}") from exc

        logger.debug("%s %s -> %s", method, path, response.status_code)
        return response

    @staticmethod
    def _json_or_none(response: httpx.Response) -> object:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def _json_object(self, response: httpx.Response) -> Dict[str, Any]:
        payload = self._json_or_none(response)
        if not isinstance(payload, dict):
            raise BackendError("Backend returned an unexpected response payload")
        return payload

    def _json_rows(self, response: httpx.Response) -> List[Dict[str, Any]]:
        payload = self._json_or_none(response)
        if payload is None:
            return []
        if isinstance(payload, dict):
            return [payload]
        if not isinstance(payload, list):
            raise BackendError("Backend returned an unexpected response payload")
        return [row for row in payload if isinstance(row, dict)]

    def _raise_for_status(self, response: httpx.Response, default: str) -> None:
        status_code = response.status_code
        if status_code < 400:
            return

        payload = self._json_or_none(response)
        message = _extract_error_message(payload, f"{default} (status {status_code})")
        code = payload.get("code") if isinstance(payload, dict) else None

        if status_code in (401, 403):
            raise AuthenticationError(message, status_code=status_code)
        if status_code in (409, 422) or code == _UNIQUE_VIOLATION:
            raise ConflictError(message, status_code=status_code)
        if status_code == 404:
            raise NotFoundError(message, status_code=status_code)
        raise BackendError(message, status_code=status_code)


__all__ = [
    "AuthUser",
    "AuthenticationError",
    "BackendClient",
    "BackendError",
    "BackendSession",
    "ConflictError",
    "NotFoundError",
    "parse_timestamp",
]
