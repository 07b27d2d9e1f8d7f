"""OPMS write path -- async CRUD that records change detection in the same transaction.

Provides OpmsRepository with the session_factory callable pattern. Every write
snapshots the sync-relevant columns before and after the change and hands a
Mutation to the ChangeDetector on the same session before committing, so the
business row, its change-log entry and any queued sync job are atomic.

Price writes coming from the NetSuite webhook use apply_prices() on the
webhook's own session so the receiver controls the transaction.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.opms.models import ItemModel, ProductModel, ProductPriceModel
from src.app.sync.detector import ChangeDetector, EntityNotFoundError
from src.app.sync.schemas import (
    ChangeSource,
    DetectionResult,
    EntityType,
    EventType,
    Mutation,
)

logger = structlog.get_logger(__name__)

ITEM_COLUMNS = frozenset({
    "product_id", "code", "archived", "vendor_code", "vendor_color", "colors",
})
PRODUCT_COLUMNS = frozenset({
    "name", "archived", "product_type", "width", "vrepeat", "hrepeat", "vendor_id",
    "vendor_product_name", "prop_65", "ab_2998_compliant", "tariff_code",
    "front_content", "back_content", "abrasion", "firecodes", "finishes",
    "cleanings", "origins", "uses",
})
PRICE_COLUMNS = frozenset({"p_res_cut", "p_hosp_roll", "cost_cut", "cost_roll"})


def _snapshot(model: Any, columns: Any) -> dict[str, Any]:
    return {name: getattr(model, name) for name in columns}


def _apply(model: Any, changes: dict[str, Any], allowed: frozenset[str]) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown or read-only columns: {sorted(unknown)}")
    for name, value in changes.items():
        setattr(model, name, value)


class OpmsRepository:
    """Async writes to the OPMS catalog with outbox change detection.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
        detector: ChangeDetector that logs mutations and enqueues sync jobs.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        detector: ChangeDetector,
    ) -> None:
        self._session_factory = session_factory
        self._detector = detector

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async for session in self._session_factory():
            yield session

    # ── Items ───────────────────────────────────────────────────────────────

    async def create_item(
        self, values: dict[str, Any], actor_id: int | None = None
    ) -> tuple[int, DetectionResult]:
        """Insert an item and record the INSERT mutation."""
        async with self._session() as session:
            model = ItemModel(updated_by=actor_id)
            _apply(model, values, ITEM_COLUMNS)
            session.add(model)
            await session.flush()
            detection = await self._detector.record_mutation(
                session,
                Mutation(
                    table=ItemModel.__tablename__,
                    entity_type=EntityType.ITEM,
                    entity_id=model.id,
                    event_type=EventType.INSERT,
                    after=_snapshot(model, values),
                    actor_id=actor_id,
                ),
            )
            await session.commit()
            logger.info("opms.item_created", item_id=model.id, code=model.code)
            return model.id, detection

    async def update_item(
        self, item_id: int, changes: dict[str, Any], actor_id: int | None = None
    ) -> DetectionResult:
        """Update item columns and record the mutation.

        Raises:
            EntityNotFoundError: If the item does not exist.
            ValueError: If ``changes`` names an unknown column.
        """
        async with self._session() as session:
            model = await session.get(ItemModel, item_id)
            if model is None:
                raise EntityNotFoundError(f"Item {item_id} not found")
            before = _snapshot(model, changes)
            _apply(model, changes, ITEM_COLUMNS)
            model.updated_by = actor_id
            await session.flush()
            detection = await self._detector.record_mutation(
                session,
                Mutation(
                    table=ItemModel.__tablename__,
                    entity_type=EntityType.ITEM,
                    entity_id=item_id,
                    before=before,
                    after=_snapshot(model, changes),
                    actor_id=actor_id,
                ),
            )
            await session.commit()
            return detection

    async def get_item_by_code(self, session: AsyncSession, code: str) -> ItemModel | None:
        """Look up a non-archived item by its item code on the caller's session."""
        stmt = (
            select(ItemModel)
            .where(ItemModel.code == code, ItemModel.archived.is_(False))
            .order_by(ItemModel.id)
            .limit(1)
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    # ── Products ────────────────────────────────────────────────────────────

    async def create_product(
        self, values: dict[str, Any], actor_id: int | None = None
    ) -> tuple[int, DetectionResult]:
        """Insert a product and record the INSERT mutation."""
        async with self._session() as session:
            model = ProductModel(updated_by=actor_id)
            _apply(model, values, PRODUCT_COLUMNS)
            session.add(model)
            await session.flush()
            detection = await self._detector.record_mutation(
                session,
                Mutation(
                    table=ProductModel.__tablename__,
                    entity_type=EntityType.PRODUCT,
                    entity_id=model.id,
                    event_type=EventType.INSERT,
                    after=_snapshot(model, values),
                    actor_id=actor_id,
                ),
            )
            await session.commit()
            logger.info("opms.product_created", product_id=model.id)
            return model.id, detection

    async def update_product(
        self, product_id: int, changes: dict[str, Any], actor_id: int | None = None
    ) -> DetectionResult:
        """Update product columns and record the mutation.

        Raises:
            EntityNotFoundError: If the product does not exist.
            ValueError: If ``changes`` names an unknown column.
        """
        async with self._session() as session:
            model = await session.get(ProductModel, product_id)
            if model is None:
                raise EntityNotFoundError(f"Product {product_id} not found")
            before = _snapshot(model, changes)
            _apply(model, changes, PRODUCT_COLUMNS)
            model.updated_by = actor_id
            await session.flush()
            detection = await self._detector.record_mutation(
                session,
                Mutation(
                    table=ProductModel.__tablename__,
                    entity_type=EntityType.PRODUCT,
                    entity_id=product_id,
                    before=before,
                    after=_snapshot(model, changes),
                    actor_id=actor_id,
                ),
            )
            await session.commit()
            return detection

    # ── Pricing ─────────────────────────────────────────────────────────────

    async def apply_prices(
        self,
        session: AsyncSession,
        product_id: int,
        changes: dict[str, Any],
        actor_id: int | None = None,
        origin: ChangeSource = ChangeSource.OPMS_WRITE,
    ) -> DetectionResult:
        """Upsert a product's price row on the caller's session. Does not commit."""
        model = await session.get(ProductPriceModel, product_id)
        event_type = EventType.UPDATE
        if model is None:
            model = ProductPriceModel(product_id=product_id)
            session.add(model)
            event_type = EventType.INSERT
        before = {} if event_type == EventType.INSERT else _snapshot(model, changes)
        _apply(model, changes, PRICE_COLUMNS)
        model.updated_by = actor_id
        await session.flush()
        return await self._detector.record_mutation(
            session,
            Mutation(
                table=ProductPriceModel.__tablename__,
                entity_type=EntityType.PRODUCT,
                entity_id=product_id,
                event_type=event_type,
                before=before,
                after=_snapshot(model, changes),
                actor_id=actor_id,
                origin=origin,
            ),
        )

    async def set_prices(
        self, product_id: int, changes: dict[str, Any], actor_id: int | None = None
    ) -> DetectionResult:
        """Write product pricing from OPMS itself and commit.

        Raises:
            EntityNotFoundError: If the product does not exist.
        """
        async with self._session() as session:
            if await session.get(ProductModel, product_id) is None:
                raise EntityNotFoundError(f"Product {product_id} not found")
            detection = await self.apply_prices(session, product_id, changes, actor_id)
            await session.commit()
            return detection
