"""Queue Processor -- claim, transform, upsert and retry state machine.

QueueProcessor drains the SyncQueueStore in small batches. For each claimed
job it either fans a PRODUCT job out into ITEM jobs, or transforms the item
and upserts it into NetSuite through the RemoteAdapter.

Failure handling:
- TransientRemoteError (and anything unexpected): back to PENDING with
  exponential backoff until the retry budget is spent, then FAILED
- PermanentRemoteError: FAILED immediately
- RemoteAuthError: job released without consuming a retry, processor halts

The enabled flag is injected at construction; a disabled processor claims
nothing.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.monitoring import (
    record_queue_depth,
    sync_auth_failures_total,
    sync_job_duration_seconds,
    sync_jobs_total,
    track_remote_call,
)
from src.app.opms.models import ItemModel
from src.app.sync.adapter import (
    RemoteAdapter,
    RemoteAdapterError,
    RemoteAuthError,
    TransientRemoteError,
)
from src.app.sync.schemas import (
    BatchResult,
    DryRunReport,
    EntityType,
    ProcessorStatus,
    SyncJobRead,
    SyncOutcome,
    TriggerSource,
)
from src.app.sync.store import SyncQueueStore
from src.app.sync.transformer import DataTransformer

logger = structlog.get_logger(__name__)

# Per-job outcomes tallied into BatchResult
_COMPLETED = "completed"
_SKIPPED = "skipped"
_RETRIED = "retried"
_FAILED = "failed"
_HALTED = "halted"
_LOST = "claim_lost"


class QueueProcessor:
    """Worker that executes sync jobs against the remote adapter.

    Args:
        store: Queue store to claim from and record outcomes in.
        transformer: Builds payloads or skip reasons for ITEM jobs.
        adapter: Remote adapter performing the idempotent upsert.
        session_factory: Async callable yielding sessions for reads and fan-out.
        enabled: Master toggle, read once from settings by the caller.
        dry_run: Simulate every upsert instead of writing to NetSuite.
        batch_size: Jobs claimed per run_once() call.
        poll_interval: Seconds run_forever() waits when the queue is idle.
        retry_base_seconds: Backoff for the first retry.
        retry_max_seconds: Backoff cap.
        worker_id: Identifier stamped on claimed jobs.
    """

    def __init__(
        self,
        store: SyncQueueStore,
        transformer: DataTransformer,
        adapter: RemoteAdapter,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        enabled: bool = True,
        dry_run: bool = False,
        batch_size: int = 1,
        poll_interval: float = 5.0,
        retry_base_seconds: float = 2.0,
        retry_max_seconds: float = 30.0,
        worker_id: str | None = None,
    ) -> None:
        self._store = store
        self._transformer = transformer
        self._adapter = adapter
        self._session_factory = session_factory
        self._enabled = enabled
        self._dry_run = dry_run
        self._batch_size = max(1, batch_size)
        self._poll_interval = poll_interval
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._worker_id = worker_id or f"sync-worker-{uuid.uuid4().hex[:8]}"

        self._running = False
        self._halted = False
        self._wake = asyncio.Event()
        self._last_run_at: datetime | None = None
        self._batches = 0
        self._processed = 0
        self._last_error: str | None = None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async for session in self._session_factory():
            yield session

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def halted(self) -> bool:
        return self._halted

    def retry_delay(self, retry_number: int) -> float:
        """Backoff before retry number ``retry_number`` (1-based): 2s, 4s, 8s ... capped."""
        return min(self._retry_base * 2 ** (retry_number - 1), self._retry_max)

    def status(self) -> ProcessorStatus:
        return ProcessorStatus(
            enabled=self._enabled,
            dry_run=self._dry_run,
            running=self._running,
            halted=self._halted,
            worker_id=self._worker_id,
            batch_size=self._batch_size,
            last_run_at=self._last_run_at,
            batches=self._batches,
            processed=self._processed,
            last_error=self._last_error,
        )

    # ── Loop ────────────────────────────────────────────────────────────────

    async def run_once(self) -> BatchResult:
        """Claim up to batch_size jobs and execute each one."""
        if not self._enabled:
            return BatchResult(disabled=True)
        if self._halted:
            return BatchResult(halted=True)

        jobs = await self._store.claim_next(self._batch_size, worker_id=self._worker_id)
        result = BatchResult(claimed=len(jobs))
        self._last_run_at = datetime.now(timezone.utc)
        self._batches += 1

        done = 0
        try:
            for job in jobs:
                outcome = await self._execute(job)
                done += 1
                self._processed += 1
                if outcome == _COMPLETED:
                    result.completed += 1
                elif outcome == _SKIPPED:
                    result.skipped += 1
                elif outcome == _RETRIED:
                    result.retried += 1
                elif outcome == _FAILED:
                    result.failed += 1
                elif outcome == _HALTED:
                    result.halted = True
                    break
        finally:
            # Claimed jobs behind a halt or an error go back untouched
            await self._release_all(jobs[done:])

        if jobs:
            depth = await self._store.queue_depth()
            record_queue_depth(depth.by_status)
            logger.info("sync.batch_processed", worker_id=self._worker_id, **result.model_dump())
        return result

    async def run_forever(self) -> None:
        """Poll the queue until stop() is called or the processor halts."""
        if not self._enabled:
            logger.info("sync.processor_disabled", worker_id=self._worker_id)
            return

        self._running = True
        self._wake.clear()
        logger.info(
            "sync.processor_started",
            worker_id=self._worker_id,
            batch_size=self._batch_size,
            dry_run=self._dry_run,
        )
        try:
            while self._running:
                try:
                    result = await self.run_once()
                except Exception as exc:
                    self._last_error = str(exc)
                    logger.exception("sync.batch_failed", worker_id=self._worker_id)
                    result = BatchResult()

                if result.halted:
                    break
                if result.claimed == 0:
                    try:
                        await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
                    except asyncio.TimeoutError:
                        pass
        finally:
            self._running = False
            logger.info("sync.processor_stopped", worker_id=self._worker_id, halted=self._halted)

    def stop(self) -> None:
        """Signal run_forever() to exit after the current batch."""
        self._running = False
        self._wake.set()

    # ── Job Execution ───────────────────────────────────────────────────────

    async def _execute(self, job: SyncJobRead) -> str:
        started = time.perf_counter()
        with structlog.contextvars.bound_contextvars(
            job_id=job.id,
            entity_type=job.entity_type.value,
            entity_id=job.entity_id,
        ):
            if await self._store.mark_started(job.id, worker_id=self._worker_id) is None:
                return _LOST
            if job.entity_type == EntityType.PRODUCT:
                outcome = await self._fan_out(job)
            else:
                outcome = await self._sync_item(job)

        sync_jobs_total.labels(entity_type=job.entity_type.value, outcome=outcome).inc()
        sync_job_duration_seconds.labels(entity_type=job.entity_type.value).observe(
            time.perf_counter() - started
        )
        return outcome

    async def _fan_out(self, job: SyncJobRead) -> str:
        """Queue one ITEM job per non-archived item of the product."""
        stmt = (
            select(ItemModel.id)
            .where(ItemModel.product_id == job.entity_id, ItemModel.archived.is_(False))
            .order_by(ItemModel.id)
        )
        try:
            async with self._session() as session:
                item_ids = list((await session.execute(stmt)).scalars().all())
                job_ids: list[int] = []
                for item_id in item_ids:
                    item_job_id, _ = await self._store.enqueue(
                        session,
                        EntityType.ITEM,
                        item_id,
                        event_type=job.event_type,
                        priority=job.priority,
                        event_data={
                            "trigger_source": TriggerSource.PRODUCT_FANOUT.value,
                            "product_job_id": job.id,
                            "changed_fields": job.event_data.get("changed_fields", []),
                        },
                    )
                    job_ids.append(item_job_id)
                await session.commit()
        except Exception as exc:
            logger.exception("sync.fanout_failed", product_id=job.entity_id)
            return await self._handle_transient(job, f"Fan-out failed: {exc}")

        await self._store.mark_completed(
            job.id, {"fanned_out_job_ids": job_ids}, worker_id=self._worker_id
        )
        logger.info("sync.product_fanned_out", product_id=job.entity_id, item_jobs=len(job_ids))
        return _COMPLETED

    async def _sync_item(self, job: SyncJobRead) -> str:
        try:
            async with self._session() as session:
                transform = await self._transformer.transform(
                    session, EntityType.ITEM, job.entity_id
                )
        except Exception as exc:
            logger.exception("sync.transform_failed")
            return await self._handle_transient(job, f"Transform failed: {exc}")

        if transform.skipped:
            reason = transform.skip_reason.value
            await self._store.mark_completed(
                job.id,
                {"skipped": True, "skip_reason": reason, "skip_detail": transform.skip_detail},
                worker_id=self._worker_id,
            )
            await self._store.record_sync_status(
                EntityType.ITEM, job.entity_id, SyncOutcome.SKIPPED, error=reason, job_id=job.id
            )
            return _SKIPPED

        try:
            async with track_remote_call("upsert") as tracker:
                upsert = await self._adapter.upsert(transform.payload, dry_run=self._dry_run)
                tracker["status"] = upsert.operation.value.lower()
        except RemoteAuthError as exc:
            return await self._halt(job, exc)
        except TransientRemoteError as exc:
            return await self._handle_transient(job, str(exc))
        except RemoteAdapterError as exc:
            return await self._fail(job, str(exc))
        except Exception as exc:
            logger.exception("sync.upsert_unexpected_error")
            return await self._handle_transient(job, f"Unexpected error: {exc}")

        result: dict[str, Any] = {
            "operation": upsert.operation.value,
            "remote_id": upsert.remote_id,
            "dry_run": upsert.dry_run,
            "item_code": transform.payload.get("itemId"),
        }
        if upsert.dry_run:
            dry_run = await self._store.record_dry_run(EntityType.ITEM, job.entity_id, upsert)
            result["dry_run_id"] = dry_run.id

        await self._store.mark_completed(job.id, result, worker_id=self._worker_id)
        await self._store.record_sync_status(
            EntityType.ITEM,
            job.entity_id,
            SyncOutcome.DRY_RUN if upsert.dry_run else SyncOutcome.SYNCED,
            remote_id=upsert.remote_id,
            job_id=job.id,
        )
        logger.info("sync.job_completed", **result)
        return _COMPLETED

    # ── Failure Paths ───────────────────────────────────────────────────────

    async def _handle_transient(self, job: SyncJobRead, error: str) -> str:
        self._last_error = error
        if job.retry_count >= job.max_retries:
            await self._store.mark_failed(job.id, error, worker_id=self._worker_id)
            await self._record_status(job, SyncOutcome.FAILED, error)
            logger.error(
                "sync.job_failed",
                error=error,
                retry_count=job.retry_count,
                max_retries=job.max_retries,
            )
            return _FAILED

        retry_number = job.retry_count + 1
        delay = self.retry_delay(retry_number)
        await self._store.schedule_retry(job.id, error, delay, worker_id=self._worker_id)
        await self._record_status(job, SyncOutcome.RETRYING, error)
        logger.warning(
            "sync.job_retry_scheduled",
            error=error,
            retry_count=retry_number,
            delay_seconds=delay,
        )
        return _RETRIED

    async def _fail(self, job: SyncJobRead, error: str) -> str:
        self._last_error = error
        await self._store.mark_failed(job.id, error, worker_id=self._worker_id)
        await self._record_status(job, SyncOutcome.FAILED, error)
        logger.error("sync.job_failed_permanently", error=error)
        return _FAILED

    async def _halt(self, job: SyncJobRead, exc: RemoteAuthError) -> str:
        self._halted = True
        self._last_error = str(exc)
        await self._store.release(job.id, worker_id=self._worker_id)
        await self._record_status(job, SyncOutcome.RETRYING, str(exc))
        sync_auth_failures_total.inc()
        logger.critical("sync.adapter_auth_failed", error=str(exc), worker_id=self._worker_id)
        return _HALTED

    async def _release_all(self, jobs: list[SyncJobRead]) -> None:
        for job in jobs:
            try:
                await self._store.release(job.id, worker_id=self._worker_id)
            except Exception:
                # Left in PROCESSING; stale recovery picks it up
                logger.exception("sync.release_failed", job_id=job.id)

    async def _record_status(self, job: SyncJobRead, outcome: SyncOutcome, error: str) -> None:
        await self._store.record_sync_status(
            job.entity_type, job.entity_id, outcome, error=error, job_id=job.id
        )

    # ── Dry Run ─────────────────────────────────────────────────────────────

    async def dry_run_entity(self, item_id: int) -> DryRunReport:
        """Transform and simulate the upsert of one item, persisting the prediction.

        Does not touch the queue or ItemSyncStatus. Adapter errors propagate.
        """
        async with self._session() as session:
            transform = await self._transformer.transform(session, EntityType.ITEM, item_id)

        if transform.skipped:
            return DryRunReport(
                entity_id=item_id,
                skip_reason=transform.skip_reason,
                skip_detail=transform.skip_detail,
            )

        async with track_remote_call("dry_run"):
            upsert = await self._adapter.upsert(transform.payload, dry_run=True)
        record = await self._store.record_dry_run(EntityType.ITEM, item_id, upsert)
        logger.info(
            "sync.dry_run_recorded",
            item_id=item_id,
            operation=upsert.operation.value,
            dry_run_id=record.id,
        )
        return DryRunReport(entity_id=item_id, result=record)

