"""FastAPI dependency injection for sync components and operator authentication.

Sync components are built once in the application lifespan and stored on
app.state; these dependencies fetch them (503 when initialization failed)
and guard operator endpoints with the X-API-Key header.
"""

from __future__ import annotations

from typing import Any

from fastapi import Header, HTTPException, Request, status

from src.app.config import get_settings
from src.app.core.security import verify_admin_api_key
from src.app.sync.detector import ChangeDetector
from src.app.sync.processor import QueueProcessor
from src.app.sync.store import SyncQueueStore
from src.app.sync.webhook import WebhookReceiver


def _from_state(request: Request, name: str, label: str) -> Any:
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return component


async def require_admin(x_api_key: str | None = Header(default=None)) -> None:
    """Reject operator requests without the configured X-API-Key."""
    verify_admin_api_key(x_api_key, get_settings().SYNC_ADMIN_API_KEY)


async def get_store(request: Request) -> SyncQueueStore:
    return _from_state(request, "sync_store", "Sync queue store")


async def get_detector(request: Request) -> ChangeDetector:
    return _from_state(request, "change_detector", "Change detector")


async def get_processor(request: Request) -> QueueProcessor:
    return _from_state(request, "queue_processor", "Queue processor")


async def get_webhook_receiver(request: Request) -> WebhookReceiver:
    return _from_state(request, "webhook_receiver", "Webhook receiver")
