"""V1 API router -- health probes at the root, sync and webhook endpoints under /api/v1."""

from __future__ import annotations

from fastapi import APIRouter

from src.app.api.v1 import health, sync, webhooks

router = APIRouter()

router.include_router(health.router)

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(sync.router)
api_router.include_router(webhooks.router)

router.include_router(api_router)
