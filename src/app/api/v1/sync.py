"""REST API endpoints for operating the outbound sync.

Provides manual triggers (item, product, batch), queue and job inspection,
the bulk retry tool, stale recovery, dry runs and per-entity sync status.
Every endpoint requires the operator X-API-Key.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.app.api.deps import get_detector, get_processor, get_store, require_admin
from src.app.config import get_settings
from src.app.core.monitoring import record_queue_depth
from src.app.sync.adapter import RemoteAdapterError
from src.app.sync.detector import ChangeDetector, EntityNotFoundError
from src.app.sync.processor import QueueProcessor
from src.app.sync.schemas import (
    DryRunRead,
    DryRunReport,
    EntityType,
    ItemSyncStatusRead,
    JobPriority,
    JobStatus,
    ProcessorStatus,
    QueueDepth,
    SyncJobRead,
)
from src.app.sync.store import SyncQueueStore

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[Depends(require_admin)])


# ── Request Schemas ──────────────────────────────────────────────────────────


class TriggerRequest(BaseModel):
    """Request body for a manual item or product trigger."""

    priority: JobPriority = JobPriority.HIGH
    reason: str | None = None


class BatchTriggerRequest(BaseModel):
    """Request body for a full catalog re-sync."""

    priority: JobPriority = JobPriority.LOW
    reason: str | None = None
    limit: int | None = Field(default=None, ge=1)


class RetryRequest(BaseModel):
    """Request body for the bulk FAILED -> PENDING retry tool."""

    error_filter: str | None = None
    limit: int = Field(default=500, ge=1, le=10000)


# ── Response Schemas ─────────────────────────────────────────────────────────


class TriggerResponse(BaseModel):
    entity_type: EntityType
    entity_id: int | None = None
    job_ids: list[int] = Field(default_factory=list)
    count: int = 0
    priority: JobPriority


class QueueResponse(BaseModel):
    depth: QueueDepth
    worker: ProcessorStatus | None = None


class JobIdsResponse(BaseModel):
    count: int
    job_ids: list[int] = Field(default_factory=list)


# ── Triggers ─────────────────────────────────────────────────────────────────


@router.post(
    "/trigger/item/{item_id}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_item(
    item_id: int,
    body: TriggerRequest | None = None,
    detector: ChangeDetector = Depends(get_detector),
) -> TriggerResponse:
    """Queue one item for export."""
    body = body or TriggerRequest()
    try:
        job_id = await detector.trigger_item(item_id, body.priority, body.reason)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return TriggerResponse(
        entity_type=EntityType.ITEM,
        entity_id=item_id,
        job_ids=[job_id],
        count=1,
        priority=body.priority,
    )


@router.post(
    "/trigger/product/{product_id}",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_product(
    product_id: int,
    body: TriggerRequest | None = None,
    detector: ChangeDetector = Depends(get_detector),
) -> TriggerResponse:
    """Queue every non-archived item of a product."""
    body = body or TriggerRequest(priority=JobPriority.NORMAL)
    try:
        job_ids = await detector.trigger_product(product_id, body.priority, body.reason)
    except EntityNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return TriggerResponse(
        entity_type=EntityType.PRODUCT,
        entity_id=product_id,
        job_ids=job_ids,
        count=len(job_ids),
        priority=body.priority,
    )


@router.post(
    "/trigger/batch",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_batch(
    body: BatchTriggerRequest | None = None,
    detector: ChangeDetector = Depends(get_detector),
) -> TriggerResponse:
    """Queue every item that looks exportable."""
    body = body or BatchTriggerRequest()
    job_ids = await detector.trigger_batch(body.priority, body.reason, body.limit)
    return TriggerResponse(
        entity_type=EntityType.ITEM,
        job_ids=job_ids,
        count=len(job_ids),
        priority=body.priority,
    )


# ── Queue Inspection ─────────────────────────────────────────────────────────


@router.get("/queue", response_model=QueueResponse)
async def queue_status(
    request: Request,
    store: SyncQueueStore = Depends(get_store),
) -> QueueResponse:
    """Queue depth by status and priority plus worker flags."""
    depth = await store.queue_depth()
    record_queue_depth(depth.by_status)
    processor = getattr(request.app.state, "queue_processor", None)
    return QueueResponse(
        depth=depth,
        worker=processor.status() if processor is not None else None,
    )


@router.get("/jobs", response_model=list[SyncJobRead])
async def list_jobs(
    job_status: JobStatus | None = Query(default=None, alias="status"),
    entity_type: EntityType | None = None,
    entity_id: int | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    store: SyncQueueStore = Depends(get_store),
) -> list[SyncJobRead]:
    return await store.list_jobs(job_status, entity_type, entity_id, limit)


@router.get("/jobs/{job_id}", response_model=SyncJobRead)
async def get_job(job_id: int, store: SyncQueueStore = Depends(get_store)) -> SyncJobRead:
    job = await store.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync job not found: {job_id}",
        )
    return job


# ── Retry Tools ──────────────────────────────────────────────────────────────


@router.post("/retry", response_model=JobIdsResponse)
async def retry_failed(
    body: RetryRequest | None = None,
    store: SyncQueueStore = Depends(get_store),
) -> JobIdsResponse:
    """Move FAILED jobs back to PENDING, optionally filtered by error text."""
    body = body or RetryRequest()
    job_ids = await store.retry_failed(body.error_filter, body.limit)
    return JobIdsResponse(count=len(job_ids), job_ids=job_ids)


@router.post("/jobs/{job_id}/requeue", response_model=SyncJobRead)
async def requeue_job(job_id: int, store: SyncQueueStore = Depends(get_store)) -> SyncJobRead:
    """Move one FAILED job back to PENDING."""
    job = await store.requeue(job_id)
    if job is not None:
        return job
    existing = await store.get_job(job_id)
    if existing is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync job not found: {job_id}",
        )
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Only FAILED jobs can be requeued (job {job_id} is {existing.status.value})",
    )


@router.post("/recover-stale", response_model=JobIdsResponse)
async def recover_stale(
    older_than_seconds: int | None = Query(default=None, ge=0),
    store: SyncQueueStore = Depends(get_store),
) -> JobIdsResponse:
    """Reset PROCESSING jobs whose worker stopped without finishing them."""
    if older_than_seconds is None:
        older_than_seconds = get_settings().SYNC_STALE_AFTER_SECONDS
    job_ids = await store.recover_stale(older_than_seconds)
    return JobIdsResponse(count=len(job_ids), job_ids=job_ids)


# ── Dry Runs ─────────────────────────────────────────────────────────────────


@router.post("/dry-run/item/{item_id}", response_model=DryRunReport)
async def dry_run_item(
    item_id: int,
    processor: QueueProcessor = Depends(get_processor),
) -> DryRunReport:
    """Transform and simulate the upsert of one item without writing to NetSuite."""
    try:
        return await processor.dry_run_entity(item_id)
    except RemoteAdapterError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


@router.get("/dry-run/item/{item_id}", response_model=list[DryRunRead])
async def list_dry_runs(
    item_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    store: SyncQueueStore = Depends(get_store),
) -> list[DryRunRead]:
    return await store.list_dry_runs(item_id, limit)


# ── Sync Status ──────────────────────────────────────────────────────────────


@router.get("/status/{entity_type}/{entity_id}", response_model=ItemSyncStatusRead)
async def sync_status(
    entity_type: EntityType,
    entity_id: int,
    store: SyncQueueStore = Depends(get_store),
) -> ItemSyncStatusRead:
    record = await store.get_sync_status(entity_type, entity_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No sync status for {entity_type.value} {entity_id}",
        )
    return record
