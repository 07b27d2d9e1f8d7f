"""Sync Queue Store -- durable job queue with coalescing and atomic claims.

Provides SyncQueueStore with the session_factory callable pattern used by the
repositories. Two kinds of methods:

- Outbox methods (enqueue, record_inbound) take the caller's AsyncSession and
  never commit, so they join the transaction that mutates the business row.
- Processor and operator methods open their own session and commit.

Claims use SELECT ... FOR UPDATE SKIP LOCKED so concurrent workers never take
the same job. A job is claimable only when no other job for the same entity is
PROCESSING and no older job for that entity is still PENDING, which keeps
per-entity application in creation order.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import case, delete, exists, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from src.app.sync.models import DryRunResultModel, ItemSyncStatusModel, SyncJobModel
from src.app.sync.schemas import (
    DryRunRead,
    EntityType,
    EventType,
    ItemSyncStatusRead,
    JobPriority,
    JobStatus,
    QueueDepth,
    SyncJobRead,
    SyncOutcome,
    UpsertResult,
)

logger = structlog.get_logger(__name__)

# Candidate rows fetched per requested claim; duplicates per entity are dropped
_CLAIM_OVERFETCH = 5

# Lost insert races re-read the winner's row; more than two means a bug
_ENQUEUE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coalesce_key(entity_type: EntityType, entity_id: int) -> str:
    return f"{entity_type.value}:{entity_id}"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from databases without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


_priority_order = case(
    {
        JobPriority.HIGH.value: 0,
        JobPriority.NORMAL.value: 1,
        JobPriority.LOW.value: 2,
    },
    value=SyncJobModel.priority,
    else_=3,
)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_job(model: SyncJobModel) -> SyncJobRead:
    """Convert SyncJobModel to SyncJobRead schema."""
    return SyncJobRead(
        id=model.id,
        entity_type=EntityType(model.entity_type),
        entity_id=model.entity_id,
        event_type=EventType(model.event_type),
        priority=JobPriority(model.priority),
        status=JobStatus(model.status),
        retry_count=model.retry_count,
        max_retries=model.max_retries,
        error_message=model.error_message,
        event_data=dict(model.event_data or {}),
        next_attempt_at=as_utc(model.next_attempt_at),
        created_at=as_utc(model.created_at),
        started_at=as_utc(model.started_at),
        processed_at=as_utc(model.processed_at),
        worker_id=model.worker_id,
    )


def _model_to_status(model: ItemSyncStatusModel) -> ItemSyncStatusRead:
    return ItemSyncStatusRead(
        entity_type=EntityType(model.entity_type),
        entity_id=model.entity_id,
        remote_id=model.remote_id,
        last_outcome=SyncOutcome(model.last_outcome) if model.last_outcome else None,
        last_error=model.last_error,
        last_job_id=model.last_job_id,
        last_synced_at=as_utc(model.last_synced_at),
        last_inbound_at=as_utc(model.last_inbound_at),
        last_inbound_remote_modified=as_utc(model.last_inbound_remote_modified),
        updated_at=as_utc(model.updated_at),
    )


def merge_event_data(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Fold a new change notification into a pending job's event_data.

    Later keys win, changed_fields is the ordered union of both lists and
    coalesced_count records how many notifications were merged.
    """
    merged = {**existing, **incoming}
    fields = list(existing.get("changed_fields") or [])
    for name in incoming.get("changed_fields") or []:
        if name not in fields:
            fields.append(name)
    merged["changed_fields"] = fields
    merged["coalesced_count"] = int(existing.get("coalesced_count", 0)) + 1
    return merged


# ── Store ───────────────────────────────────────────────────────────────────


class SyncQueueStore:
    """Durable, queryable record of pending, active and terminal sync jobs.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        default_max_retries: Retry budget stamped on newly inserted jobs.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        default_max_retries: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._default_max_retries = default_max_retries

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Run one unit of work on a session from the factory.

        Drains the factory generator on exit so the session is closed
        deterministically instead of at garbage collection.
        """
        async for session in self._session_factory():
            yield session

    # ── Outbox (caller's transaction) ───────────────────────────────────────

    async def enqueue(
        self,
        session: AsyncSession,
        entity_type: EntityType,
        entity_id: int,
        event_type: EventType = EventType.UPDATE,
        priority: JobPriority = JobPriority.NORMAL,
        event_data: dict[str, Any] | None = None,
    ) -> tuple[int, bool]:
        """Add work for an entity, coalescing into an existing PENDING job.

        If the entity already has a PENDING job, that job's priority becomes
        the higher of the two and its event_data absorbs the new context. If
        the entity only has a PROCESSING job, a new PENDING row is inserted
        so the change is re-exported after the in-flight one finishes.

        Does not commit.

        Returns:
            (job_id, coalesced) tuple.
        """
        event_data = dict(event_data or {})
        for _ in range(_ENQUEUE_ATTEMPTS):
            existing = await self._pending_job(session, entity_type, entity_id)
            if existing is not None:
                old_priority = JobPriority(existing.priority)
                existing.priority = JobPriority.highest(old_priority, priority).value
                existing.event_data = merge_event_data(existing.event_data or {}, event_data)
                await session.flush()
                logger.info(
                    "sync.job_coalesced",
                    job_id=existing.id,
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    priority_before=old_priority.value,
                    priority_after=existing.priority,
                )
                return existing.id, True

            job_id = await self._insert_pending(
                session, entity_type, entity_id, event_type, priority, event_data
            )
            if job_id is not None:
                logger.info(
                    "sync.job_enqueued",
                    job_id=job_id,
                    entity_type=entity_type.value,
                    entity_id=entity_id,
                    priority=priority.value,
                    trigger_source=event_data.get("trigger_source"),
                )
                return job_id, False

            # A concurrent writer inserted first; its row is committed now
            logger.debug(
                "sync.enqueue_conflict",
                entity_type=entity_type.value,
                entity_id=entity_id,
            )

        raise RuntimeError(
            f"Could not enqueue {entity_type.value} {entity_id} after {_ENQUEUE_ATTEMPTS} attempts"
        )

    @staticmethod
    async def _pending_job(
        session: AsyncSession, entity_type: EntityType, entity_id: int
    ) -> SyncJobModel | None:
        stmt = (
            select(SyncJobModel)
            .where(
                SyncJobModel.entity_type == entity_type.value,
                SyncJobModel.entity_id == entity_id,
                SyncJobModel.status == JobStatus.PENDING.value,
            )
            .order_by(SyncJobModel.id.desc())
            .limit(1)
            .with_for_update()
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _insert_pending(
        self,
        session: AsyncSession,
        entity_type: EntityType,
        entity_id: int,
        event_type: EventType,
        priority: JobPriority,
        event_data: dict[str, Any],
    ) -> int | None:
        """INSERT ... ON CONFLICT (coalesce_key) DO NOTHING.

        Returns the new job id, or None when another transaction already
        holds an unclaimed row for the entity.
        """
        dialect = session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = (
            insert(SyncJobModel)
            .values(
                entity_type=entity_type.value,
                entity_id=entity_id,
                event_type=event_type.value,
                priority=priority.value,
                status=JobStatus.PENDING.value,
                retry_count=0,
                max_retries=self._default_max_retries,
                event_data=event_data,
                coalesce_key=coalesce_key(entity_type, entity_id),
                created_at=_utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["coalesce_key"])
            .returning(SyncJobModel.id)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def has_open_job(
        self, session: AsyncSession, entity_type: EntityType, entity_id: int
    ) -> bool:
        """Return True if the entity has a PENDING or PROCESSING job."""
        stmt = select(
            exists().where(
                SyncJobModel.entity_type == entity_type.value,
                SyncJobModel.entity_id == entity_id,
                SyncJobModel.status.in_(
                    [JobStatus.PENDING.value, JobStatus.PROCESSING.value]
                ),
            )
        )
        return bool((await session.execute(stmt)).scalar())

    async def record_inbound(
        self,
        session: AsyncSession,
        entity_type: EntityType,
        entity_id: int,
        remote_id: str | None,
        remote_modified: datetime | None,
    ) -> None:
        """Record an applied inbound (NetSuite -> OPMS) change. Does not commit."""
        model = await self._get_status_model(session, entity_type, entity_id)
        if model is None:
            model = ItemSyncStatusModel(entity_type=entity_type.value, entity_id=entity_id)
            session.add(model)
        if remote_id:
            model.remote_id = remote_id
        model.last_inbound_at = _utcnow()
        if remote_modified is not None:
            model.last_inbound_remote_modified = remote_modified
        await session.flush()

    async def get_sync_status_in(
        self, session: AsyncSession, entity_type: EntityType, entity_id: int
    ) -> ItemSyncStatusRead | None:
        """Read ItemSyncStatus inside the caller's transaction."""
        model = await self._get_status_model(session, entity_type, entity_id)
        return _model_to_status(model) if model is not None else None

    # ── Claiming ────────────────────────────────────────────────────────────

    async def claim_next(
        self, max_batch: int = 1, worker_id: str | None = None
    ) -> list[SyncJobRead]:
        """Atomically claim up to max_batch PENDING jobs.

        Order: HIGH before NORMAL before LOW, FIFO by created_at within a
        tier. Jobs still in backoff, jobs whose entity is already
        PROCESSING, and jobs with an older PENDING sibling are not eligible.
        Each claimed job transitions to PROCESSING.
        """
        if max_batch <= 0:
            return []

        now = _utcnow()
        busy = aliased(SyncJobModel)
        older = aliased(SyncJobModel)

        stmt = (
            select(SyncJobModel)
            .where(
                SyncJobModel.status == JobStatus.PENDING.value,
                or_(
                    SyncJobModel.next_attempt_at.is_(None),
                    SyncJobModel.next_attempt_at <= now,
                ),
                ~exists().where(
                    busy.entity_type == SyncJobModel.entity_type,
                    busy.entity_id == SyncJobModel.entity_id,
                    busy.status == JobStatus.PROCESSING.value,
                ),
                ~exists().where(
                    older.entity_type == SyncJobModel.entity_type,
                    older.entity_id == SyncJobModel.entity_id,
                    older.status == JobStatus.PENDING.value,
                    older.id < SyncJobModel.id,
                ),
            )
            .order_by(_priority_order, SyncJobModel.created_at, SyncJobModel.id)
            .limit(max_batch * _CLAIM_OVERFETCH)
            .with_for_update(skip_locked=True, of=SyncJobModel)
        )

        async with self._session() as session:
            candidates = (await session.execute(stmt)).scalars().all()

            claimed: list[SyncJobModel] = []
            seen: set[tuple[str, int]] = set()
            for model in candidates:
                key = (model.entity_type, model.entity_id)
                if key in seen:
                    continue
                seen.add(key)
                model.status = JobStatus.PROCESSING.value
                model.started_at = now
                model.worker_id = worker_id
                model.coalesce_key = None
                claimed.append(model)
                if len(claimed) >= max_batch:
                    break

            await session.commit()

            if claimed:
                logger.debug(
                    "sync.jobs_claimed",
                    worker_id=worker_id,
                    job_ids=[m.id for m in claimed],
                )
            return [_model_to_job(m) for m in claimed]

    # ── Terminal / retry transitions ────────────────────────────────────────
    #
    # Transitions out of PROCESSING apply only while the job is still
    # PROCESSING for the calling worker. A late write from a worker whose
    # claim was recovered is a no-op.

    @staticmethod
    async def _owned_job(
        session: AsyncSession, job_id: int, worker_id: str | None, transition: str
    ) -> SyncJobModel | None:
        stmt = (
            select(SyncJobModel)
            .where(
                SyncJobModel.id == job_id,
                SyncJobModel.status == JobStatus.PROCESSING.value,
            )
            .with_for_update()
        )
        if worker_id is not None:
            stmt = stmt.where(SyncJobModel.worker_id == worker_id)
        model = (await session.execute(stmt)).scalar_one_or_none()
        if model is None:
            logger.warning(
                "sync.job_claim_lost",
                job_id=job_id,
                worker_id=worker_id,
                transition=transition,
            )
        return model

    async def mark_started(
        self, job_id: int, worker_id: str | None = None
    ) -> SyncJobRead | None:
        """Stamp started_at as execution of a claimed job begins.

        Returns None if the job is no longer PROCESSING for worker_id; the
        caller must then leave the job alone.
        """
        async with self._session() as session:
            model = await self._owned_job(session, job_id, worker_id, "start")
            if model is None:
                return None
            model.started_at = _utcnow()
            await session.commit()
            return _model_to_job(model)

    async def mark_completed(
        self,
        job_id: int,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> SyncJobRead | None:
        """PROCESSING -> COMPLETED, storing the outcome under event_data['result']."""
        async with self._session() as session:
            model = await self._owned_job(session, job_id, worker_id, "complete")
            if model is None:
                return None
            model.status = JobStatus.COMPLETED.value
            model.processed_at = _utcnow()
            model.error_message = None
            if result is not None:
                model.event_data = {**(model.event_data or {}), "result": result}
            await session.commit()
            return _model_to_job(model)

    async def mark_failed(
        self, job_id: int, error: str, worker_id: str | None = None
    ) -> SyncJobRead | None:
        """PROCESSING -> FAILED. retry_count is left as is."""
        async with self._session() as session:
            model = await self._owned_job(session, job_id, worker_id, "fail")
            if model is None:
                return None
            model.status = JobStatus.FAILED.value
            model.error_message = error
            model.processed_at = _utcnow()
            await session.commit()
            return _model_to_job(model)

    async def schedule_retry(
        self,
        job_id: int,
        error: str,
        delay_seconds: float,
        worker_id: str | None = None,
    ) -> SyncJobRead | None:
        """PROCESSING -> PENDING with retry_count + 1 and a backoff gate."""
        async with self._session() as session:
            model = await self._owned_job(session, job_id, worker_id, "retry")
            if model is None:
                return None
            now = _utcnow()
            model.retry_count = model.retry_count + 1
            model.status = JobStatus.PENDING.value
            model.error_message = error
            model.next_attempt_at = now + timedelta(seconds=delay_seconds)
            model.started_at = None
            model.worker_id = None
            await session.commit()
            return _model_to_job(model)

    async def release(
        self, job_id: int, worker_id: str | None = None
    ) -> SyncJobRead | None:
        """PROCESSING -> PENDING without consuming a retry."""
        async with self._session() as session:
            model = await self._owned_job(session, job_id, worker_id, "release")
            if model is None:
                return None
            model.status = JobStatus.PENDING.value
            model.started_at = None
            model.worker_id = None
            await session.commit()
            return _model_to_job(model)

    async def requeue(self, job_id: int) -> SyncJobRead | None:
        """FAILED -> PENDING with retry_count and error cleared.

        Returns None if the job does not exist or is not FAILED.
        """
        async with self._session() as session:
            model = await session.get(SyncJobModel, job_id)
            if model is None or model.status != JobStatus.FAILED.value:
                return None
            self._reset_for_retry(model)
            await session.commit()
            logger.info("sync.job_requeued", job_id=job_id)
            return _model_to_job(model)

    async def retry_failed(
        self, error_filter: str | None = None, limit: int = 500
    ) -> list[int]:
        """Bulk retry tool: reset FAILED jobs whose error matches error_filter.

        Matching is a case-insensitive substring test; no filter matches every
        FAILED job. Returns the ids that were reset.
        """
        stmt = (
            select(SyncJobModel)
            .where(SyncJobModel.status == JobStatus.FAILED.value)
            .order_by(SyncJobModel.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        if error_filter:
            stmt = stmt.where(SyncJobModel.error_message.ilike(f"%{error_filter}%"))

        async with self._session() as session:
            models = (await session.execute(stmt)).scalars().all()
            for model in models:
                self._reset_for_retry(model)
            await session.commit()
            job_ids = [m.id for m in models]
            logger.info(
                "sync.failed_jobs_retried",
                count=len(job_ids),
                error_filter=error_filter,
            )
            return job_ids

    @staticmethod
    def _reset_for_retry(model: SyncJobModel) -> None:
        model.status = JobStatus.PENDING.value
        model.retry_count = 0
        model.error_message = None
        model.next_attempt_at = None
        model.started_at = None
        model.processed_at = None
        model.worker_id = None

    async def recover_stale(self, older_than_seconds: int) -> list[int]:
        """Reset PROCESSING jobs whose claim is older than the threshold.

        Used after an abrupt stop left jobs stranded in PROCESSING.
        """
        cutoff = _utcnow() - timedelta(seconds=older_than_seconds)
        stmt = (
            select(SyncJobModel)
            .where(
                SyncJobModel.status == JobStatus.PROCESSING.value,
                or_(SyncJobModel.started_at.is_(None), SyncJobModel.started_at < cutoff),
            )
            .with_for_update(skip_locked=True)
        )
        async with self._session() as session:
            models = (await session.execute(stmt)).scalars().all()
            recovered_at = _utcnow().isoformat()
            for model in models:
                model.status = JobStatus.PENDING.value
                model.event_data = {
                    **(model.event_data or {}),
                    "recovered_from_stale_at": recovered_at,
                    "stale_worker_id": model.worker_id,
                }
                model.started_at = None
                model.worker_id = None
            await session.commit()
            job_ids = [m.id for m in models]
            if job_ids:
                logger.warning("sync.stale_jobs_recovered", job_ids=job_ids)
            return job_ids

    # ── Inspection ──────────────────────────────────────────────────────────

    async def get_job(self, job_id: int) -> SyncJobRead | None:
        async with self._session() as session:
            model = await session.get(SyncJobModel, job_id)
            return _model_to_job(model) if model is not None else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        entity_type: EntityType | None = None,
        entity_id: int | None = None,
        limit: int = 50,
    ) -> list[SyncJobRead]:
        """List jobs newest first, optionally filtered."""
        stmt = select(SyncJobModel).order_by(SyncJobModel.id.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(SyncJobModel.status == status.value)
        if entity_type is not None:
            stmt = stmt.where(SyncJobModel.entity_type == entity_type.value)
        if entity_id is not None:
            stmt = stmt.where(SyncJobModel.entity_id == entity_id)

        async with self._session() as session:
            models = (await session.execute(stmt)).scalars().all()
            return [_model_to_job(m) for m in models]

    async def queue_depth(self) -> QueueDepth:
        """Count jobs by status and by (status, priority)."""
        stmt = select(
            SyncJobModel.status, SyncJobModel.priority, func.count(SyncJobModel.id)
        ).group_by(SyncJobModel.status, SyncJobModel.priority)

        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
            depth = QueueDepth(
                by_status={s.value: 0 for s in JobStatus},
            )
            for status, priority, count in rows:
                depth.by_status[status] = depth.by_status.get(status, 0) + count
                depth.by_status_priority.setdefault(status, {})[priority] = count
                depth.total += count
            return depth

    # ── Maintenance ─────────────────────────────────────────────────────────

    async def cancel_pending(self, entity_type: EntityType, entity_id: int) -> int:
        """Delete PENDING jobs for an entity. Returns the number removed."""
        stmt = delete(SyncJobModel).where(
            SyncJobModel.entity_type == entity_type.value,
            SyncJobModel.entity_id == entity_id,
            SyncJobModel.status == JobStatus.PENDING.value,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount or 0

    async def cleanup_completed(self, older_than_days: int = 7) -> int:
        """Delete COMPLETED jobs processed more than older_than_days ago."""
        cutoff = _utcnow() - timedelta(days=older_than_days)
        stmt = delete(SyncJobModel).where(
            SyncJobModel.status == JobStatus.COMPLETED.value,
            SyncJobModel.processed_at < cutoff,
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            removed = result.rowcount or 0
            logger.info("sync.completed_jobs_cleaned", removed=removed, older_than_days=older_than_days)
            return removed

    # ── Item Sync Status ────────────────────────────────────────────────────

    @staticmethod
    async def _get_status_model(
        session: AsyncSession, entity_type: EntityType, entity_id: int
    ) -> ItemSyncStatusModel | None:
        stmt = select(ItemSyncStatusModel).where(
            ItemSyncStatusModel.entity_type == entity_type.value,
            ItemSyncStatusModel.entity_id == entity_id,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    async def record_sync_status(
        self,
        entity_type: EntityType,
        entity_id: int,
        outcome: SyncOutcome,
        remote_id: str | None = None,
        error: str | None = None,
        job_id: int | None = None,
    ) -> ItemSyncStatusRead:
        """Upsert the ItemSyncStatus row after a job outcome."""
        async with self._session() as session:
            model = await self._get_status_model(session, entity_type, entity_id)
            if model is None:
                model = ItemSyncStatusModel(entity_type=entity_type.value, entity_id=entity_id)
                session.add(model)
            model.last_outcome = outcome.value
            model.last_error = error
            model.last_job_id = job_id
            if remote_id:
                model.remote_id = remote_id
            if outcome == SyncOutcome.SYNCED:
                model.last_synced_at = _utcnow()
            model.updated_at = _utcnow()
            await session.commit()
            return _model_to_status(model)

    async def get_sync_status(
        self, entity_type: EntityType, entity_id: int
    ) -> ItemSyncStatusRead | None:
        async with self._session() as session:
            return await self.get_sync_status_in(session, entity_type, entity_id)

    # ── Dry Runs ────────────────────────────────────────────────────────────

    async def record_dry_run(
        self, entity_type: EntityType, entity_id: int, result: UpsertResult
    ) -> DryRunRead:
        """Persist a simulate-only upsert prediction for inspection."""
        async with self._session() as session:
            model = DryRunResultModel(
                entity_type=entity_type.value,
                entity_id=entity_id,
                operation=result.operation.value,
                remote_id=result.remote_id,
                request_payload=result.request,
                simulated_response=result.response,
                created_at=_utcnow(),
            )
            session.add(model)
            await session.commit()
            return DryRunRead(
                id=model.id,
                entity_type=entity_type,
                entity_id=entity_id,
                operation=result.operation,
                remote_id=model.remote_id,
                request_payload=dict(model.request_payload or {}),
                simulated_response=dict(model.simulated_response or {}),
                created_at=as_utc(model.created_at),
            )

    async def list_dry_runs(self, entity_id: int, limit: int = 20) -> list[DryRunRead]:
        stmt = (
            select(DryRunResultModel)
            .where(DryRunResultModel.entity_id == entity_id)
            .order_by(DryRunResultModel.id.desc())
            .limit(limit)
        )
        async with self._session() as session:
            models = (await session.execute(stmt)).scalars().all()
            return [
                DryRunRead(
                    id=m.id,
                    entity_type=EntityType(m.entity_type),
                    entity_id=m.entity_id,
                    operation=m.operation,
                    remote_id=m.remote_id,
                    request_payload=dict(m.request_payload or {}),
                    simulated_response=dict(m.simulated_response or {}),
                    created_at=as_utc(m.created_at),
                )
                for m in models
            ]
