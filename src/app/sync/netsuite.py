"""NetSuite RESTlet adapter -- inventory item search/create/update over HTTP.

Implements RemoteAdapter against the item-upsert RESTlet:
- search: GET  ?action=search&itemId=...  -> {"success", "found", "id"}
- create: POST {"action": "create", ...fields} -> {"success", "id"}
- update: PUT  {"id": remote_id, ...fields} -> {"success", "id"}

Key implementation details:
- OAuth 1.0a token-based auth signed with HMAC-SHA256 via authlib
- Every HTTP request waits on the shared rate limiter first
- Connection-level failures are retried once in-call with tenacity
- HTTP status and RESTlet error codes are mapped onto the adapter error hierarchy
"""

from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Protocol

import httpx
import structlog
from authlib.common.encoding import to_bytes, to_unicode
from authlib.integrations.httpx_client import OAuth1Auth
from authlib.oauth1 import ClientAuth
from authlib.oauth1.rfc5849.signature import generate_signature_base_string
from authlib.oauth1.rfc5849.util import escape
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.app.config import Settings
from src.app.sync.adapter import (
    PermanentRemoteError,
    RemoteAdapter,
    RemoteAuthError,
    RemoteNotFoundError,
    TransientRemoteError,
)

logger = structlog.get_logger(__name__)

SIGNATURE_HMAC_SHA256 = "HMAC-SHA256"

# RESTlet error codes that are not plain validation failures
_NOT_FOUND_CODES = {"RCRD_DSNT_EXIST", "ITEM_NOT_FOUND"}
_AUTH_CODES = {"INVALID_LOGIN_ATTEMPT", "INVALID_LOGIN", "INSUFFICIENT_PERMISSION"}
_THROTTLE_CODES = {"SSS_REQUEST_LIMIT_EXCEEDED", "CONCURRENCY_LIMIT_EXCEEDED"}


def sign_hmac_sha256(client: Any, request: Any) -> str:
    """OAuth 1.0a HMAC-SHA256 signature (NetSuite TBA)."""
    base_string = generate_signature_base_string(request)
    key = f"{escape(client.client_secret or '')}&{escape(client.token_secret or '')}"
    digest = hmac.new(to_bytes(key), to_bytes(base_string), hashlib.sha256).digest()
    return to_unicode(base64.b64encode(digest))


ClientAuth.register_signature_method(SIGNATURE_HMAC_SHA256, sign_hmac_sha256)


def build_oauth(settings: Settings) -> OAuth1Auth:
    """Token-based OAuth 1.0a auth for NetSuite, realm = account id."""
    return OAuth1Auth(
        client_id=settings.NETSUITE_CONSUMER_KEY,
        client_secret=settings.NETSUITE_CONSUMER_SECRET,
        token=settings.NETSUITE_TOKEN_ID,
        token_secret=settings.NETSUITE_TOKEN_SECRET,
        signature_method=SIGNATURE_HMAC_SHA256,
        realm=settings.NETSUITE_ACCOUNT_ID.upper().replace("-", "_"),
    )


class RateLimiter(Protocol):
    async def acquire(self) -> float: ...


class NetSuiteAdapter(RemoteAdapter):
    """RemoteAdapter backed by the NetSuite item-upsert RESTlet.

    Args:
        restlet_url: Full RESTlet URL including script and deploy parameters.
        rate_limiter: Shared limiter awaited before every request.
        auth: httpx auth (OAuth1Auth in production).
        timeout_seconds: Per-request timeout.
        sync_actor_id: Stamped on every write next to the source marker.
        client: Pre-built httpx.AsyncClient (tests inject a MockTransport).
    """

    def __init__(
        self,
        restlet_url: str,
        rate_limiter: RateLimiter,
        auth: httpx.Auth | None = None,
        timeout_seconds: float = 30.0,
        sync_actor_id: int = 1,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(sync_actor_id=sync_actor_id)
        self._url = httpx.URL(restlet_url)
        self._rate_limiter = rate_limiter
        self._client = client or httpx.AsyncClient(auth=auth, timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, rate_limiter: RateLimiter) -> NetSuiteAdapter:
        return cls(
            restlet_url=settings.NETSUITE_RESTLET_URL,
            rate_limiter=rate_limiter,
            auth=build_oauth(settings),
            timeout_seconds=settings.NETSUITE_TIMEOUT_SECONDS,
            sync_actor_id=settings.SYNC_ACTOR_ID,
        )

    async def close(self) -> None:
        await self._client.aclose()

    # ── Transport ───────────────────────────────────────────────────────────

    @retry(
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, max=2),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _send(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        await self._rate_limiter.acquire()
        # Keep the script and deploy parameters already on the RESTlet URL
        url = self._url.copy_merge_params(params) if params else self._url
        return await self._client.request(method, url, json=json)

    async def _call(
        self,
        method: str,
        operation: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._send(method, params=params, json=json)
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"NetSuite {operation} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"NetSuite {operation} connection failed: {exc}") from exc

        logger.debug(
            "netsuite.response",
            operation=operation,
            status_code=response.status_code,
        )
        return self._parse(response, operation)

    @staticmethod
    def _parse(response: httpx.Response, operation: str) -> dict[str, Any]:
        """Map an HTTP response onto a body dict or an adapter error."""
        status = response.status_code
        text = response.text[:500]

        if status in (401, 403):
            raise RemoteAuthError(f"NetSuite {operation} rejected credentials: {text}", status)
        if status == 404:
            raise RemoteNotFoundError(f"NetSuite {operation} target not found: {text}", status)
        if status == 429 or status >= 500:
            raise TransientRemoteError(f"NetSuite {operation} HTTP {status}: {text}", status)
        if status >= 400:
            raise PermanentRemoteError(f"NetSuite {operation} HTTP {status}: {text}", status)

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientRemoteError(
                f"NetSuite {operation} returned non-JSON body: {text}", status
            ) from exc
        if not isinstance(body, dict):
            raise PermanentRemoteError(f"NetSuite {operation} returned unexpected body", status)

        if body.get("success") is False:
            error = body.get("error")
            code = error.get("code") if isinstance(error, dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            detail = f"NetSuite {operation} failed: {code or ''} {message or ''}".strip()
            if code in _NOT_FOUND_CODES:
                raise RemoteNotFoundError(detail, status)
            if code in _AUTH_CODES:
                raise RemoteAuthError(detail, status)
            if code in _THROTTLE_CODES:
                raise TransientRemoteError(detail, status)
            raise PermanentRemoteError(detail, status)

        return body

    # ── RemoteAdapter ───────────────────────────────────────────────────────

    async def search(self, natural_key: str) -> dict[str, Any] | None:
        body = await self._call(
            "GET", "search", params={"action": "search", "itemId": natural_key}
        )
        if not body.get("found") or body.get("id") is None:
            return None
        return {**body, "id": str(body["id"])}

    async def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._call("POST", "create", json={"action": "create", **payload})

    async def update(self, remote_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._call("PUT", "update", json={**payload, "id": remote_id})
