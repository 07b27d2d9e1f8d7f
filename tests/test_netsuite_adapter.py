"""Tests for NetSuiteAdapter over httpx.MockTransport.

Each test scripts the RESTlet with a handler function and inspects the
requests the adapter sends.
"""

from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest

from src.app.sync.adapter import (
    PermanentRemoteError,
    RemoteAuthError,
    RemoteNotFoundError,
    TransientRemoteError,
)
from src.app.sync.field_mapping import SYNC_ACTOR_FIELD, SYNC_SOURCE_FIELD, SYNC_SOURCE_VALUE
from src.app.sync.netsuite import NetSuiteAdapter, build_oauth
from src.app.sync.schemas import UpsertOperation

RESTLET_URL = "https://1234567-sb1.restlets.api.netsuite.com/app/site/hosting/restlet.nl?script=100&deploy=1"

PAYLOAD = {"itemId": "1234-5678", "displayname": "Tweed Classic: Blue, Grey", "price_1_": "45.00"}


class CountingLimiter:
    def __init__(self) -> None:
        self.acquired = 0

    async def acquire(self) -> float:
        self.acquired += 1
        return 0.0


class FakeRestlet:
    """Records requests and answers from a queue of (status, body) responses."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0)
        if isinstance(body, Exception):
            raise body
        if isinstance(body, str):
            return httpx.Response(status, text=body)
        return httpx.Response(status, json=body)

    def body(self, index: int) -> dict:
        return json.loads(self.requests[index].content)


def _adapter(restlet: FakeRestlet, limiter=None, auth=None) -> NetSuiteAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(restlet), auth=auth)
    return NetSuiteAdapter(
        restlet_url=RESTLET_URL,
        rate_limiter=limiter or CountingLimiter(),
        sync_actor_id=7,
        client=client,
    )


NOT_FOUND = (200, {"success": True, "found": False})


# ── Search ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_search_sends_item_id_query():
    restlet = FakeRestlet((200, {"success": True, "found": True, "id": 9876}))
    adapter = _adapter(restlet)

    found = await adapter.search("1234-5678")

    assert found["id"] == "9876"
    request = restlet.requests[0]
    assert request.method == "GET"
    assert request.url.params["action"] == "search"
    assert request.url.params["itemId"] == "1234-5678"
    assert request.url.params["script"] == "100"
    assert request.url.params["deploy"] == "1"


@pytest.mark.asyncio
async def test_search_not_found_returns_none():
    adapter = _adapter(FakeRestlet(NOT_FOUND))
    assert await adapter.search("1234-5678") is None


# ── Upsert ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_upsert_creates_when_search_misses():
    restlet = FakeRestlet(NOT_FOUND, (200, {"success": True, "id": 555}))
    limiter = CountingLimiter()
    adapter = _adapter(restlet, limiter)

    result = await adapter.upsert(PAYLOAD)

    assert result.operation == UpsertOperation.CREATE
    assert result.remote_id == "555"
    assert restlet.requests[1].method == "POST"
    assert restlet.requests[1].url == httpx.URL(RESTLET_URL)
    body = restlet.body(1)
    assert body["action"] == "create"
    assert body["itemId"] == "1234-5678"
    assert body[SYNC_SOURCE_FIELD] == SYNC_SOURCE_VALUE
    assert body[SYNC_ACTOR_FIELD] == 7
    assert limiter.acquired == 2


@pytest.mark.asyncio
async def test_upsert_updates_when_search_hits():
    restlet = FakeRestlet(
        (200, {"success": True, "found": True, "id": "9876"}),
        (200, {"success": True, "id": "9876"}),
    )
    adapter = _adapter(restlet)

    result = await adapter.upsert(PAYLOAD)

    assert result.operation == UpsertOperation.UPDATE
    assert result.remote_id == "9876"
    assert restlet.requests[1].method == "PUT"
    body = restlet.body(1)
    assert body["id"] == "9876"
    assert "action" not in body
    assert body["price_1_"] == "45.00"


@pytest.mark.asyncio
async def test_update_against_deleted_record_falls_back_to_create():
    restlet = FakeRestlet(
        (200, {"success": True, "found": True, "id": "9876"}),
        (200, {"success": False, "error": {"code": "RCRD_DSNT_EXIST", "message": "gone"}}),
        (200, {"success": True, "id": "9999"}),
    )
    adapter = _adapter(restlet)

    result = await adapter.upsert(PAYLOAD)

    assert result.operation == UpsertOperation.CREATE
    assert result.remote_id == "9999"
    assert [r.method for r in restlet.requests] == ["GET", "PUT", "POST"]


@pytest.mark.asyncio
async def test_dry_run_searches_but_never_writes():
    restlet = FakeRestlet((200, {"success": True, "found": True, "id": "9876"}))
    adapter = _adapter(restlet)

    result = await adapter.upsert(PAYLOAD, dry_run=True)

    assert result.dry_run is True
    assert result.operation == UpsertOperation.UPDATE
    assert result.response["simulated"] is True
    assert result.request[SYNC_SOURCE_FIELD] == SYNC_SOURCE_VALUE
    assert [r.method for r in restlet.requests] == ["GET"]


@pytest.mark.asyncio
async def test_upsert_without_item_id_is_permanent():
    restlet = FakeRestlet()
    with pytest.raises(PermanentRemoteError):
        await _adapter(restlet).upsert({"displayname": "No code"})
    assert restlet.requests == []


# ── Error Mapping ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "body", "error"),
    [
        (401, {"error": "bad token"}, RemoteAuthError),
        (403, {"error": "forbidden"}, RemoteAuthError),
        (404, {"error": "no such script"}, RemoteNotFoundError),
        (429, {"error": "slow down"}, TransientRemoteError),
        (503, {"error": "maintenance"}, TransientRemoteError),
        (400, {"error": "bad request"}, PermanentRemoteError),
        (200, "<html>Service Unavailable</html>", TransientRemoteError),
        (200, {"success": False, "error": {"code": "INVALID_LOGIN_ATTEMPT"}}, RemoteAuthError),
        (200, {"success": False, "error": {"code": "SSS_REQUEST_LIMIT_EXCEEDED"}}, TransientRemoteError),
        (200, {"success": False, "error": {"code": "INVALID_FLD_VALUE", "message": "vendor"}}, PermanentRemoteError),
        (200, {"success": False, "error": "Something broke"}, PermanentRemoteError),
    ],
)
async def test_responses_map_to_adapter_errors(status, body, error):
    adapter = _adapter(FakeRestlet(NOT_FOUND, (status, body)))

    with pytest.raises(error) as exc_info:
        await adapter.upsert(PAYLOAD)

    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_connection_error_is_retried_once():
    restlet = FakeRestlet(
        (0, httpx.ConnectError("connection refused")),
        (200, {"success": True, "found": False}),
    )
    adapter = _adapter(restlet)

    assert await adapter.search("1234-5678") is None
    assert len(restlet.requests) == 2


@pytest.mark.asyncio
async def test_persistent_connection_error_is_transient():
    restlet = FakeRestlet(
        (0, httpx.ConnectError("connection refused")),
        (0, httpx.ConnectError("connection refused")),
    )

    with pytest.raises(TransientRemoteError, match="connection failed"):
        await _adapter(restlet).search("1234-5678")


# ── OAuth ────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_requests_carry_hmac_sha256_oauth_header():
    settings = SimpleNamespace(
        NETSUITE_ACCOUNT_ID="1234567-sb1",
        NETSUITE_CONSUMER_KEY="consumer-key",
        NETSUITE_CONSUMER_SECRET="consumer-secret",
        NETSUITE_TOKEN_ID="token-id",
        NETSUITE_TOKEN_SECRET="token-secret",
    )
    restlet = FakeRestlet(NOT_FOUND)
    adapter = _adapter(restlet, auth=build_oauth(settings))

    await adapter.search("1234-5678")

    header = restlet.requests[0].headers["Authorization"]
    assert header.startswith("OAuth ")
    assert 'realm="1234567_SB1"' in header
    assert 'oauth_signature_method="HMAC-SHA256"' in header
    assert 'oauth_consumer_key="consumer-key"' in header
    assert 'oauth_token="token-id"' in header
    assert "oauth_signature=" in header
