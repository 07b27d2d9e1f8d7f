"""Webhook Receiver -- NetSuite pricing edits written back into OPMS.

WebhookReceiver.handle() takes an already signature-verified request body and
runs the checks in a fixed order:

1. Payload shape (malformed JSON, unsupported event, missing itemid) -> rejected
2. System origin (non-UI execution context, or our own sync marker) -> skipped
3. Reverse-sync exclusion flag -> skipped, before any field work
4. Pricing allow-list -> skipped when nothing allow-listed is present
5. Price validation -> rejected when out of range
6. OPMS item lookup -> rejected when unknown
7. Stale remote edit guard -> skipped
8. Prices already equal -> skipped
9. Apply in one transaction, stamped with the sync actor -> applied

The write goes through OpmsRepository.apply_prices(), so the change log
records it while the sync actor id keeps it from being queued back out.
"""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from src.app.core.monitoring import webhook_events_total
from src.app.opms.models import ProductPriceModel
from src.app.opms.repository import OpmsRepository
from src.app.sync.field_mapping import (
    MAX_PRICE,
    MIN_PRICE,
    PRICING_FIELD_MAP,
    REVERSE_SYNC_EXCLUSION_FIELD,
    SYNC_SOURCE_FIELD,
    SYNC_SOURCE_VALUE,
    to_decimal,
)
from src.app.sync.schemas import ChangeSource, EntityType, WebhookAck, WebhookStatus
from src.app.sync.store import SyncQueueStore, as_utc

logger = structlog.get_logger(__name__)

SUPPORTED_EVENT_TYPES = frozenset({"item.pricing.updated"})

# Rejections caused by the request itself; answered with HTTP 400
BAD_REQUEST_REASONS = frozenset({
    "malformed_payload",
    "unsupported_event_type",
    "missing_item_id",
})

_USER_INTERFACE_CONTEXTS = frozenset({"USERINTERFACE", "USER_INTERFACE"})

_REMOTE_DATE_FORMATS = (
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
)


class WebhookEvent(BaseModel):
    """Body posted by the NetSuite item user-event script."""

    model_config = ConfigDict(extra="allow")

    eventType: str | None = None
    timestamp: str | None = None
    executionContext: str | None = None
    itemData: dict[str, Any] = Field(default_factory=dict)


def parse_remote_datetime(value: Any) -> datetime | None:
    """Parse NetSuite's lastmodifieddate (ISO 8601 or M/D/YYYY h:mm am). Naive -> UTC."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _REMOTE_DATE_FORMATS:
            try:
                parsed = datetime.strptime(text.upper(), fmt)
                break
            except ValueError:
                continue
    return as_utc(parsed)


def is_checked(value: Any) -> bool:
    """NetSuite checkboxes arrive as true/"T"/"true"."""
    if isinstance(value, bool):
        return value
    return str(value).strip().upper() in {"T", "TRUE", "Y", "YES", "1"}


def is_system_origin(execution_context: str | None, item_data: dict[str, Any]) -> bool:
    """True when the edit did not come from a person in the NetSuite UI.

    A non-UI execution context is always system-originated. Without a
    context, the sync marker decides.
    """
    context = (execution_context or "").strip().upper()
    if context:
        return context not in _USER_INTERFACE_CONTEXTS
    return item_data.get(SYNC_SOURCE_FIELD) == SYNC_SOURCE_VALUE


def validate_price(value: Decimal) -> bool:
    """Non-negative; zero clears the price, anything else must be 0.01..999999.99."""
    if value < 0:
        return False
    if value == 0:
        return True
    return MIN_PRICE <= value <= MAX_PRICE


class WebhookReceiver:
    """Applies allow-listed NetSuite pricing edits to OPMS.

    Args:
        session_factory: Async callable yielding sessions; one per apply.
        repository: OPMS write path used for the price update.
        store: Queue store, for inbound bookkeeping on ItemSyncStatus.
        sync_actor_id: Actor id stamped on the OPMS write.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
        repository: OpmsRepository,
        store: SyncQueueStore,
        sync_actor_id: int = 1,
    ) -> None:
        self._session_factory = session_factory
        self._repository = repository
        self._store = store
        self._sync_actor_id = sync_actor_id
        self._counts: Counter[str] = Counter()
        self._reasons: Counter[str] = Counter()
        self._last_received_at: datetime | None = None

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async for session in self._session_factory():
            yield session

    # ── Stats ───────────────────────────────────────────────────────────────

    def stats(self) -> dict[str, Any]:
        return {
            "received": self._counts["received"],
            "applied": self._counts[WebhookStatus.APPLIED.value],
            "skipped": self._counts[WebhookStatus.SKIPPED.value],
            "rejected": self._counts[WebhookStatus.REJECTED.value],
            "failed": self._counts["failed"],
            "by_reason": dict(self._reasons),
            "last_received_at": self._last_received_at,
        }

    def _ack(
        self,
        status: WebhookStatus,
        reason: str,
        item_id: str | None = None,
        opms_item_id: int | None = None,
        applied_fields: dict[str, str] | None = None,
    ) -> WebhookAck:
        self._counts[status.value] += 1
        self._reasons[reason] += 1
        webhook_events_total.labels(status=status.value, reason=reason).inc()
        log = logger.warning if status == WebhookStatus.REJECTED else logger.info
        log("sync.webhook_handled", status=status.value, reason=reason, item_id=item_id)
        return WebhookAck(
            status=status,
            reason=reason,
            item_id=item_id,
            opms_item_id=opms_item_id,
            applied_fields=applied_fields or {},
        )

    # ── Handling ────────────────────────────────────────────────────────────

    async def handle(self, body: bytes) -> WebhookAck:
        """Process one verified webhook body.

        Raises:
            Exception: Whatever failed while applying; the transaction is
                rolled back and nothing is written.
        """
        self._counts["received"] += 1
        self._last_received_at = datetime.now(timezone.utc)

        try:
            event = WebhookEvent.model_validate(json.loads(body))
        except (ValueError, ValidationError):
            return self._ack(WebhookStatus.REJECTED, "malformed_payload")

        item_data = event.itemData
        item_code = str(item_data.get("itemid") or "").strip() or None

        if event.eventType not in SUPPORTED_EVENT_TYPES:
            return self._ack(WebhookStatus.REJECTED, "unsupported_event_type", item_code)
        if item_code is None:
            return self._ack(WebhookStatus.REJECTED, "missing_item_id")

        if is_system_origin(event.executionContext, item_data):
            return self._ack(WebhookStatus.SKIPPED, "system_originated", item_code)
        if is_checked(item_data.get(REVERSE_SYNC_EXCLUSION_FIELD, False)):
            return self._ack(WebhookStatus.SKIPPED, "excluded_from_reverse_sync", item_code)

        incoming = {
            opms_field: item_data[netsuite_field]
            for netsuite_field, opms_field in PRICING_FIELD_MAP.items()
            if item_data.get(netsuite_field) not in (None, "")
        }
        if not incoming:
            return self._ack(WebhookStatus.SKIPPED, "no_allowed_fields", item_code)

        changes: dict[str, Decimal] = {}
        for field, raw in incoming.items():
            value = to_decimal(raw)
            if value is None or not validate_price(value):
                logger.warning("sync.webhook_invalid_price", item_id=item_code, field=field, value=raw)
                return self._ack(WebhookStatus.REJECTED, "invalid_pricing", item_code)
            changes[field] = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        remote_modified = parse_remote_datetime(item_data.get("lastmodifieddate"))
        remote_id = item_data.get("internalid")

        async with self._session() as session:
            try:
                item = await self._repository.get_item_by_code(session, item_code)
                if item is None:
                    return self._ack(WebhookStatus.REJECTED, "opms_item_not_found", item_code)

                price = await session.get(ProductPriceModel, item.product_id)
                if await self._is_stale(session, item.id, price, remote_modified):
                    return self._ack(
                        WebhookStatus.SKIPPED, "stale_remote_change", item_code, item.id
                    )

                if price is not None and all(
                    getattr(price, field) is not None and Decimal(getattr(price, field)) == value
                    for field, value in changes.items()
                ):
                    return self._ack(WebhookStatus.SKIPPED, "no_changes", item_code, item.id)

                await self._repository.apply_prices(
                    session,
                    item.product_id,
                    changes,
                    actor_id=self._sync_actor_id,
                    origin=ChangeSource.NETSUITE_WEBHOOK,
                )
                await self._store.record_inbound(
                    session,
                    EntityType.ITEM,
                    item.id,
                    remote_id=str(remote_id) if remote_id is not None else None,
                    remote_modified=remote_modified,
                )
                await session.commit()
            except Exception:
                await session.rollback()
                self._counts["failed"] += 1
                webhook_events_total.labels(status="failed", reason="apply_error").inc()
                logger.exception("sync.webhook_apply_failed", item_id=item_code)
                raise

        return self._ack(
            WebhookStatus.APPLIED,
            "pricing_updated",
            item_code,
            item.id,
            {field: str(value) for field, value in changes.items()},
        )

    async def _is_stale(
        self,
        session: AsyncSession,
        item_id: int,
        price: ProductPriceModel | None,
        remote_modified: datetime | None,
    ) -> bool:
        """True when a newer OPMS edit or a newer applied inbound edit exists."""
        if remote_modified is None:
            return False
        if price is not None and price.updated_by != self._sync_actor_id:
            local_modified = as_utc(price.updated_at)
            if local_modified is not None and local_modified > remote_modified:
                return True
        status = await self._store.get_sync_status_in(session, EntityType.ITEM, item_id)
        if status is not None and status.last_inbound_remote_modified is not None:
            return status.last_inbound_remote_modified > remote_modified
        return False
