"""Inbound NetSuite webhook endpoints.

The pricing endpoint verifies the HMAC signature over the raw body before
anything is parsed. Business rejections (unknown item, invalid price) are
acknowledged with 200 so NetSuite does not redeliver them; only malformed
requests get a 400 and only apply failures get a 500.
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, Request, status
from fastapi.responses import JSONResponse

from src.app.api.deps import get_webhook_receiver, require_admin
from src.app.config import get_settings
from src.app.core.security import verify_webhook_signature
from src.app.sync.schemas import WebhookAck
from src.app.sync.webhook import BAD_REQUEST_REASONS, WebhookReceiver

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/netsuite/item-pricing", response_model=WebhookAck)
async def netsuite_item_pricing(
    request: Request,
    x_signature: str | None = Header(default=None),
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
) -> Any:
    """Apply an item.pricing.updated event from NetSuite to OPMS."""
    body = await request.body()
    verify_webhook_signature(body, x_signature, get_settings().NETSUITE_WEBHOOK_SECRET)

    try:
        ack = await receiver.handle(body)
    except Exception as exc:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error", "reason": "apply_failed", "detail": str(exc)},
        )

    if ack.reason in BAD_REQUEST_REASONS:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=ack.model_dump(mode="json"),
        )
    return ack


@router.get("/netsuite/stats", dependencies=[Depends(require_admin)])
async def netsuite_webhook_stats(
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
) -> dict[str, Any]:
    """Counters of webhook outcomes since process start."""
    return receiver.stats()
