"""Sync engine persistence models.

Four SQLAlchemy models backing the outbox and its bookkeeping:
- SyncJobModel: Durable work queue row (opms_sync_queue)
- ChangeLogModel: Immutable audit row per detected mutation (opms_change_log)
- ItemSyncStatusModel: Last known remote state per entity (opms_item_sync_status)
- DryRunResultModel: Persisted simulate-only upsert predictions (opms_dry_run_results)
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.app.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncJobModel(Base):
    """Unit of outbound sync work for one entity.

    At most one row per (entity_type, entity_id) may be PROCESSING; a change
    for an entity that already has a PENDING row coalesces into that row.
    coalesce_key is set only while a freshly enqueued row waits to be claimed;
    its unique constraint stops concurrent writers inserting twice.
    """

    __tablename__ = "opms_sync_queue"
    __table_args__ = (
        Index("ix_sync_queue_claim", "status", "priority", "created_at"),
        Index("ix_sync_queue_entity", "entity_type", "entity_id", "status"),
        UniqueConstraint("coalesce_key", name="uq_sync_queue_coalesce_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(10), nullable=False, default="UPDATE")
    priority: Mapped[str] = mapped_column(String(10), nullable=False, default="NORMAL")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_data: Mapped[dict] = mapped_column(JSON, default=dict)
    next_attempt_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    worker_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    coalesce_key: Mapped[str | None] = mapped_column(String(60), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class ChangeLogModel(Base):
    """Audit record of one detected mutation. Never updated after insert."""

    __tablename__ = "opms_change_log"
    __table_args__ = (
        Index("ix_change_log_entity", "entity_type", "entity_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    table_name: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(String(10), nullable=False)
    change_source: Mapped[str] = mapped_column(String(30), nullable=False)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    changed_fields: Mapped[list] = mapped_column(JSON, default=list)
    job_created: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suppressed_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )


class ItemSyncStatusModel(Base):
    """Last known sync state of one entity, written after every job outcome."""

    __tablename__ = "opms_item_sync_status"
    __table_args__ = (
        UniqueConstraint("entity_type", "entity_id", name="uq_item_sync_status_entity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    remote_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_outcome: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_job_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_inbound_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_inbound_remote_modified: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class DryRunResultModel(Base):
    """Predicted create/update outcome of a simulate-only upsert."""

    __tablename__ = "opms_dry_run_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    remote_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    request_payload: Mapped[dict] = mapped_column(JSON, default=dict)
    simulated_response: Mapped[dict] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )
