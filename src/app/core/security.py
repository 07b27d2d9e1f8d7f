"""Webhook signature verification and operator API key validation.

Provides the security primitives used at the HTTP boundary:
- compute_signature / verify_webhook_signature: HMAC-SHA256 over the raw body
- verify_admin_api_key: constant-time check of the operator X-API-Key
"""

from __future__ import annotations

import hashlib
import hmac

import structlog
from fastapi import HTTPException, status

logger = structlog.get_logger(__name__)

SIGNATURE_PREFIX = "sha256="

# ── Webhook Signatures ────────────────────────────────────────────────────────


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of body keyed by secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(body: bytes, signature: str | None, secret: str) -> None:
    """Verify the X-Signature header of a webhook request.

    Accepts the bare hex digest or one prefixed with "sha256=".

    Raises:
        HTTPException(401): If no signature was sent.
        HTTPException(403): If the secret is not configured or the signature does not match.
    """
    if not signature:
        logger.warning("webhook.signature_missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature",
        )
    if not secret:
        logger.error("webhook.secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Webhook secret not configured",
        )

    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, body)

    if not hmac.compare_digest(provided.lower().encode("utf-8"), expected.encode("utf-8")):
        logger.warning("webhook.signature_mismatch")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook signature",
        )


# ── API Key Validation ────────────────────────────────────────────────────────


def verify_admin_api_key(api_key: str | None, expected: str) -> None:
    """Check an operator API key.

    Raises:
        HTTPException(401): If the key is missing or wrong.
        HTTPException(503): If no admin key is configured.
    """
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Operator API key not configured",
        )
    if not api_key or not hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
