from __future__ import annotations

import json
from typing import Callable, List

import httpx
import pytest

from finadmin.backend import (
    AuthenticationError,
    BackendClient,
    BackendError,
    ConflictError,
    NotFoundError,
    parse_timestamp,
)

BASE_URL = "https://backend.test"
ANON_KEY = "anon-key"

SESSION_PAYLOAD = {
    "access_token": "jwt-1",
    "refresh_token": "refresh-1",
    "expires_in": 1800,
    "user": {"id": "u-1", "email": "jane@x.com"},
}


def _client(handler: Callable[[httpx.Request], httpx.Response], *, service_key: str | None = None):
    requests: List[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = BackendClient(
        BASE_URL + "/",
        ANON_KEY,
        service_key=service_key,
        transport=httpx.MockTransport(record),
    )
    return client, requests


def test_client_requires_url_and_key() -> None:
    with pytest.raises(ValueError):
        BackendClient("  ", ANON_KEY)
    with pytest.raises(ValueError):
        BackendClient(BASE_URL, "")
    assert BackendClient(BASE_URL + "/", ANON_KEY).base_url == BASE_URL


def test_parse_timestamp_accepts_zulu_suffix() -> None:
    parsed = parse_timestamp("2024-05-01T10:00:00Z")

    assert parsed is not None
    assert parsed.utcoffset() is not None
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None


@pytest.mark.anyio
async def test_sign_in_posts_password_grant_with_key_headers() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json=SESSION_PAYLOAD))

    session = await client.sign_in_with_password("jane@x.com", "secret1")

    request = requests[0]
    assert request.method == "POST"
    assert request.url.path == "/auth/v1/token"
    assert request.url.params["grant_type"] == "password"
    assert request.headers["apikey"] == ANON_KEY
    assert request.headers["authorization"] == f"Bearer {ANON_KEY}"
    assert json.loads(request.content) == {"email": "jane@x.com", "password": "secret1"}
    assert session.access_token == "jwt-1"
    assert session.expires_in == 1800
    assert session.user.id == "u-1"


@pytest.mark.anyio
async def test_sign_in_rejection_carries_backend_message() -> None:
    client, _ = _client(
        lambda request: httpx.Response(400, json={"error": "invalid_grant", "error_description": "Invalid login credentials"})
    )

    with pytest.raises(AuthenticationError) as excinfo:
        await client.sign_in_with_password("jane@x.com", "wrong")

    assert str(excinfo.value) == "Invalid login credentials"
    assert excinfo.value.status_code == 400


@pytest.mark.anyio
async def test_sign_up_returns_session_when_confirmation_is_disabled() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json=SESSION_PAYLOAD))

    user, session = await client.sign_up("jane@x.com", "secret1")

    assert requests[0].url.path == "/auth/v1/signup"
    assert user.id == "u-1"
    assert session is not None and session.access_token == "jwt-1"


@pytest.mark.anyio
async def test_sign_up_pending_confirmation_has_no_session() -> None:
    client, _ = _client(lambda request: httpx.Response(200, json={"id": "u-2", "email": "new@x.com"}))

    user, session = await client.sign_up("new@x.com", "secret1")

    assert user.id == "u-2"
    assert session is None


@pytest.mark.anyio
async def test_sign_up_duplicate_is_a_conflict() -> None:
    client, _ = _client(lambda request: httpx.Response(422, json={"msg": "User already registered"}))

    with pytest.raises(ConflictError, match="User already registered"):
        await client.sign_up("taken@x.com", "secret1")


@pytest.mark.anyio
async def test_user_endpoints_send_the_session_token() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/user":
            return httpx.Response(200, json={"id": "u-1", "email": "jane@x.com"})
        return httpx.Response(204)

    client, requests = _client(handler)

    user = await client.get_user("jwt-1")
    await client.sign_out("jwt-1")

    assert user.email == "jane@x.com"
    assert [request.headers["authorization"] for request in requests] == ["Bearer jwt-1", "Bearer jwt-1"]
    assert requests[1].url.path == "/auth/v1/logout"
    assert requests[1].headers["apikey"] == ANON_KEY


@pytest.mark.anyio
async def test_select_builds_filters_and_order() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json=[{"id": "n1"}]))

    rows = await client.select(
        "notifications",
        filters={"user_id": "u-1", "read": False},
        order="date",
        descending=True,
        access_token="jwt-1",
    )

    params = requests[0].url.params
    assert requests[0].url.path == "/rest/v1/notifications"
    assert params["select"] == "*"
    assert params["user_id"] == "eq.u-1"
    assert params["read"] == "eq.false"
    assert params["order"] == "date.desc"
    assert requests[0].headers["authorization"] == "Bearer jwt-1"
    assert rows == [{"id": "n1"}]


@pytest.mark.anyio
async def test_single_select_asks_for_object_and_maps_406() -> None:
    client, requests = _client(lambda request: httpx.Response(406, json={"message": "JSON object requested"}))

    with pytest.raises(NotFoundError):
        await client.select("profiles", filters={"id": "missing"}, single=True)

    assert requests[0].headers["accept"] == "application/vnd.pgrst.object+json"


@pytest.mark.anyio
async def test_insert_requests_representation_and_merges_on_upsert() -> None:
    client, requests = _client(lambda request: httpx.Response(201, json=[{"id": "u-1", "balance": 5}]))

    plain = await client.insert("profiles", [{"id": "u-1", "balance": 5}])
    await client.insert("profiles", [{"id": "u-1", "balance": 5}], upsert=True)

    assert plain == [{"id": "u-1", "balance": 5}]
    assert requests[0].headers["prefer"] == "return=representation"
    assert "resolution=merge-duplicates" in requests[1].headers["prefer"]
    assert json.loads(requests[0].content) == [{"id": "u-1", "balance": 5}]


@pytest.mark.anyio
async def test_unique_violation_is_reported_as_conflict() -> None:
    client, _ = _client(
        lambda request: httpx.Response(400, json={"code": "23505", "message": "duplicate key value"})
    )

    with pytest.raises(ConflictError):
        await client.insert("profiles", [{"id": "u-1"}])


@pytest.mark.anyio
async def test_update_patches_filtered_rows() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json=[{"id": "t1", "status": "SUCCESS"}]))

    rows = await client.update("transactions", {"status": "SUCCESS"}, filters={"id": "t1"})

    assert requests[0].method == "PATCH"
    assert requests[0].url.params["id"] == "eq.t1"
    assert rows[0]["status"] == "SUCCESS"


@pytest.mark.anyio
async def test_update_without_filters_is_refused() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json=[]))

    with pytest.raises(ValueError):
        await client.update("profiles", {"balance": 0}, filters={})

    assert requests == []


@pytest.mark.anyio
async def test_error_statuses_map_to_exception_types() -> None:
    statuses = iter([401, 404, 500])
    client, _ = _client(lambda request: httpx.Response(next(statuses), json={"message": "nope"}))

    with pytest.raises(AuthenticationError):
        await client.select("profiles")
    with pytest.raises(NotFoundError):
        await client.select("profiles")
    with pytest.raises(BackendError) as excinfo:
        await client.select("profiles")
    assert excinfo.value.status_code == 500


@pytest.mark.anyio
async def test_transport_errors_become_backend_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, _ = _client(handler)

    with pytest.raises(BackendError, match="Failed to contact backend"):
        await client.select("profiles")


@pytest.mark.anyio
async def test_delete_user_needs_service_key() -> None:
    client, requests = _client(lambda request: httpx.Response(200, json={}))

    with pytest.raises(BackendError):
        await client.delete_user("u-1")
    assert requests == []

    service, requests = _client(lambda request: httpx.Response(200, json={}), service_key="service-key")
    await service.delete_user("u-1")

    assert requests[0].method == "DELETE"
    assert requests[0].url.path == "/auth/v1/admin/users/u-1"
    assert requests[0].headers["apikey"] == "service-key"
    assert requests[0].headers["authorization"] == "Bearer service-key"


def test_as_service_switches_credentials() -> None:
    with pytest.raises(BackendError):
        BackendClient(BASE_URL, ANON_KEY).as_service()

    service = BackendClient(BASE_URL, ANON_KEY, service_key="service-key").as_service()

    assert service.has_service_key


@pytest.mark.anyio
async def test_refresh_session_uses_refresh_grant() -> None:
    renewed = dict(SESSION_PAYLOAD, access_token="jwt-2", refresh_token="refresh-2")
    client, requests = _client(lambda request: httpx.Response(200, json=renewed))

    session = await client.refresh_session("refresh-1")

    request = requests[0]
    assert request.url.path == "/auth/v1/token"
    assert request.url.params["grant_type"] == "refresh_token"
    assert json.loads(request.content) == {"refresh_token": "refresh-1"}
    assert session.access_token == "jwt-2"
    assert session.refresh_token == "refresh-2"


@pytest.mark.anyio
async def test_rejected_refresh_token_is_an_authentication_error() -> None:
    client, _ = _client(lambda request: httpx.Response(400, json={"error_description": "Invalid Refresh Token"}))

    with pytest.raises(AuthenticationError, match="Invalid Refresh Token"):
        await client.refresh_session("refresh-old")
