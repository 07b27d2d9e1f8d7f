"""Change Detector -- outbox writer, manual triggers and polling backup.

The OPMS write path calls record_mutation() inside the transaction that
changes the business row. The audit row and the queued job are flushed on
the same session, so both commit or roll back with the change itself.

Mutations made by the sync actor (or arriving from the NetSuite webhook)
are logged but never queued, which keeps reverse-sync writes from bouncing
back to NetSuite.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

import structlog
from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.opms.models import ItemModel, ProductModel
from src.app.sync.field_mapping import SYNC_RELEVANT_FIELDS, TABLE_ENTITY
from src.app.sync.models import ChangeLogModel, SyncJobModel
from src.app.sync.schemas import (
    ChangeSource,
    DetectionResult,
    EntityType,
    EventType,
    JobPriority,
    Mutation,
    TriggerSource,
)
from src.app.sync.store import SyncQueueStore

logger = structlog.get_logger(__name__)

POLLING_BATCH_LIMIT = 100

SUPPRESSED_SYNC_ORIGIN = "sync_origin"
SUPPRESSED_NOT_RELEVANT = "no_sync_relevant_fields"


class EntityNotFoundError(LookupError):
    """Raised when a manual trigger names an entity that does not exist."""


def _comparable(value: Any) -> Any:
    # Numeric columns come back as Decimal while callers pass floats or strings
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return Decimal(str(value))
    return value


def changed_fields(
    before: dict[str, Any],
    after: dict[str, Any],
    event_type: EventType = EventType.UPDATE,
) -> list[str]:
    """Return the sorted names of fields whose values differ.

    For INSERT every field present in ``after`` counts as changed.
    """
    if event_type == EventType.INSERT:
        return sorted(after)
    names = set(before) | set(after)
    return sorted(
        name for name in names if _comparable(before.get(name)) != _comparable(after.get(name))
    )


class ChangeDetector:
    """Records OPMS mutations and turns sync-relevant ones into queued jobs.

    Args:
        store: Queue store used to enqueue (and coalesce) jobs.
        session_factory: Async callable yielding sessions, used by the
            trigger and polling methods that own their transaction.
        sync_actor_id: Actor id stamped on writes made by the sync itself.
    """

    def __init__(
        self,
        store: SyncQueueStore,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        sync_actor_id: int = 1,
    ) -> None:
        self._store = store
        self._session_factory = session_factory
        self._sync_actor_id = sync_actor_id

    @property
    def sync_actor_id(self) -> int:
        return self._sync_actor_id

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async for session in self._session_factory():
            yield session

    # ── Outbox ──────────────────────────────────────────────────────────────

    def is_sync_origin(self, mutation: Mutation) -> bool:
        """Return True if the mutation was written by the sync engine itself."""
        return (
            mutation.actor_id == self._sync_actor_id
            or mutation.origin == ChangeSource.NETSUITE_WEBHOOK
        )

    async def record_mutation(
        self,
        session: AsyncSession,
        mutation: Mutation,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> DetectionResult:
        """Log a mutation and enqueue a job when it is sync-relevant.

        Runs on the caller's session and does not commit. The business row
        is never touched.
        """
        fields = changed_fields(mutation.before, mutation.after, mutation.event_type)
        relevant = SYNC_RELEVANT_FIELDS.get(mutation.table, frozenset())
        relevant_changed = [name for name in fields if name in relevant]

        suppressed_reason: str | None = None
        if self.is_sync_origin(mutation):
            suppressed_reason = SUPPRESSED_SYNC_ORIGIN
        elif not relevant_changed:
            suppressed_reason = SUPPRESSED_NOT_RELEVANT

        job_entity = TABLE_ENTITY.get(mutation.table, mutation.entity_type)
        job_id: int | None = None
        if suppressed_reason is None:
            job_id, _ = await self._store.enqueue(
                session,
                job_entity,
                mutation.entity_id,
                event_type=mutation.event_type,
                priority=priority,
                event_data={
                    "trigger_source": TriggerSource.OPMS_WRITE.value,
                    "table": mutation.table,
                    "changed_fields": relevant_changed,
                    "actor_id": mutation.actor_id,
                },
            )

        entry = ChangeLogModel(
            table_name=mutation.table,
            entity_type=job_entity.value,
            entity_id=mutation.entity_id,
            event_type=mutation.event_type.value,
            change_source=mutation.origin.value,
            actor_id=mutation.actor_id,
            changed_fields=fields,
            job_created=job_id is not None,
            job_id=job_id,
            suppressed_reason=suppressed_reason,
        )
        session.add(entry)
        await session.flush()

        if suppressed_reason is not None:
            logger.debug(
                "sync.change_suppressed",
                table=mutation.table,
                entity_id=mutation.entity_id,
                reason=suppressed_reason,
            )

        return DetectionResult(
            change_log_id=entry.id,
            changed_fields=fields,
            job_id=job_id,
            suppressed_reason=suppressed_reason,
        )

    async def _log_trigger(
        self,
        session: AsyncSession,
        table: str,
        entity_type: EntityType,
        entity_id: int,
        job_id: int,
        source: ChangeSource,
    ) -> None:
        session.add(
            ChangeLogModel(
                table_name=table,
                entity_type=entity_type.value,
                entity_id=entity_id,
                event_type=EventType.UPDATE.value,
                change_source=source.value,
                changed_fields=[],
                job_created=True,
                job_id=job_id,
            )
        )
        await session.flush()

    # ── Manual Triggers ─────────────────────────────────────────────────────

    async def trigger_item(
        self,
        item_id: int,
        priority: JobPriority = JobPriority.HIGH,
        reason: str | None = None,
    ) -> int:
        """Queue one item for export. Returns the (possibly coalesced) job id.

        Raises:
            EntityNotFoundError: If the item does not exist.
        """
        async with self._session() as session:
            item = await session.get(ItemModel, item_id)
            if item is None:
                raise EntityNotFoundError(f"Item {item_id} not found")
            job_id, _ = await self._store.enqueue(
                session,
                EntityType.ITEM,
                item_id,
                priority=priority,
                event_data={
                    "trigger_source": TriggerSource.MANUAL_API.value,
                    "reason": reason,
                    "item_code": item.code,
                },
            )
            await self._log_trigger(
                session, "opms_items", EntityType.ITEM, item_id, job_id, ChangeSource.MANUAL_API
            )
            await session.commit()

        logger.info("sync.manual_trigger", item_id=item_id, job_id=job_id, priority=priority.value)
        return job_id

    async def trigger_product(
        self,
        product_id: int,
        priority: JobPriority = JobPriority.NORMAL,
        reason: str | None = None,
    ) -> list[int]:
        """Queue every non-archived item of a product. Returns the job ids.

        Raises:
            EntityNotFoundError: If the product does not exist.
        """
        async with self._session() as session:
            product = await session.get(ProductModel, product_id)
            if product is None:
                raise EntityNotFoundError(f"Product {product_id} not found")
            stmt = (
                select(ItemModel.id)
                .where(ItemModel.product_id == product_id, ItemModel.archived.is_(False))
                .order_by(ItemModel.id)
            )
            item_ids = list((await session.execute(stmt)).scalars().all())

            job_ids: list[int] = []
            for item_id in item_ids:
                job_id, _ = await self._store.enqueue(
                    session,
                    EntityType.ITEM,
                    item_id,
                    priority=priority,
                    event_data={
                        "trigger_source": TriggerSource.MANUAL_PRODUCT_API.value,
                        "reason": reason,
                        "product_id": product_id,
                    },
                )
                await self._log_trigger(
                    session, "opms_items", EntityType.ITEM, item_id, job_id, ChangeSource.MANUAL_API
                )
                job_ids.append(job_id)
            await session.commit()

        logger.info(
            "sync.manual_product_trigger",
            product_id=product_id,
            items=len(job_ids),
            priority=priority.value,
        )
        return job_ids

    async def trigger_batch(
        self,
        priority: JobPriority = JobPriority.LOW,
        reason: str | None = None,
        limit: int | None = None,
    ) -> list[int]:
        """Queue every item that looks exportable: not archived, coded, product named."""
        stmt = (
            select(ItemModel.id)
            .join(ProductModel, ProductModel.id == ItemModel.product_id)
            .where(
                ItemModel.archived.is_(False),
                ProductModel.archived.is_(False),
                ItemModel.code.is_not(None),
                ItemModel.code != "",
                ProductModel.name.is_not(None),
                ProductModel.name != "",
            )
            .order_by(ItemModel.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)

        async with self._session() as session:
            item_ids = list((await session.execute(stmt)).scalars().all())
            job_ids: list[int] = []
            for item_id in item_ids:
                job_id, _ = await self._store.enqueue(
                    session,
                    EntityType.ITEM,
                    item_id,
                    priority=priority,
                    event_data={
                        "trigger_source": TriggerSource.MANUAL_BATCH_API.value,
                        "reason": reason,
                    },
                )
                job_ids.append(job_id)
            await session.commit()

        logger.info("sync.manual_batch_trigger", items=len(job_ids), priority=priority.value)
        return job_ids

    # ── Polling Backup ──────────────────────────────────────────────────────

    async def detect_missed_changes(self, since: datetime) -> list[int]:
        """Queue items modified after ``since`` that have no job since then.

        Catches writes that bypassed the repository (bulk SQL, imports).
        An item counts as modified when its own row or its product row was
        updated with no change log entry for that row since then. Returns the
        job ids created, at most POLLING_BATCH_LIMIT.
        """
        item_job = exists().where(
            SyncJobModel.entity_type == EntityType.ITEM.value,
            SyncJobModel.entity_id == ItemModel.id,
            SyncJobModel.created_at >= since,
        )
        product_job = exists().where(
            SyncJobModel.entity_type == EntityType.PRODUCT.value,
            SyncJobModel.entity_id == ItemModel.product_id,
            SyncJobModel.created_at >= since,
        )
        # A change log row means the outbox already saw the write, queued or not
        item_logged = exists().where(
            ChangeLogModel.entity_type == EntityType.ITEM.value,
            ChangeLogModel.entity_id == ItemModel.id,
            ChangeLogModel.created_at >= since,
        )
        product_logged = exists().where(
            ChangeLogModel.entity_type == EntityType.PRODUCT.value,
            ChangeLogModel.entity_id == ItemModel.product_id,
            ChangeLogModel.created_at >= since,
        )
        stmt = (
            select(ItemModel.id)
            .join(ProductModel, ProductModel.id == ItemModel.product_id)
            .where(
                or_(
                    and_(ItemModel.updated_at > since, ~item_logged),
                    and_(ProductModel.updated_at > since, ~product_logged),
                ),
                ItemModel.archived.is_(False),
                ItemModel.code.is_not(None),
                ~item_job,
                ~product_job,
                # Rows last touched by the sync actor came from NetSuite
                or_(
                    ItemModel.updated_by.is_(None),
                    ItemModel.updated_by != self._sync_actor_id,
                    and_(
                        ProductModel.updated_at > since,
                        or_(
                            ProductModel.updated_by.is_(None),
                            ProductModel.updated_by != self._sync_actor_id,
                        ),
                    ),
                ),
            )
            .order_by(ItemModel.id)
            .limit(POLLING_BATCH_LIMIT)
        )

        async with self._session() as session:
            item_ids = list((await session.execute(stmt)).scalars().all())
            job_ids: list[int] = []
            for item_id in item_ids:
                if await self._store.has_open_job(session, EntityType.ITEM, item_id):
                    continue
                job_id, _ = await self._store.enqueue(
                    session,
                    EntityType.ITEM,
                    item_id,
                    priority=JobPriority.NORMAL,
                    event_data={
                        "trigger_source": TriggerSource.POLLING_BACKUP.value,
                        "reason": "modified_without_job",
                        "since": since.isoformat(),
                    },
                )
                await self._log_trigger(
                    session,
                    "opms_items",
                    EntityType.ITEM,
                    item_id,
                    job_id,
                    ChangeSource.POLLING_BACKUP,
                )
                job_ids.append(job_id)
            await session.commit()

        if job_ids:
            logger.info("sync.polling_backup_detected", count=len(job_ids))
        return job_ids
