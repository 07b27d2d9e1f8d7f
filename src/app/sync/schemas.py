"""Pydantic schemas and enums for the OPMS <-> NetSuite sync engine.

Defines:
- Enums: EntityType, EventType, JobPriority, JobStatus, TriggerSource,
  ChangeSource, SkipReason, SyncOutcome, UpsertOperation, WebhookStatus
- Mutation: a row-level change handed to the ChangeDetector
- SyncJobRead, QueueDepth, ItemSyncStatusRead, DryRunRead: store read models
- TransformResult, UpsertResult, BatchResult, WebhookAck: component results
- ProcessorStatus, DryRunReport: operator views
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class EntityType(str, Enum):
    """Syncable OPMS entity kinds."""

    ITEM = "ITEM"
    PRODUCT = "PRODUCT"


class EventType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class JobPriority(str, Enum):
    """Claim priority. HIGH is serviced before NORMAL before LOW."""

    HIGH = "HIGH"
    NORMAL = "NORMAL"
    LOW = "LOW"

    @property
    def rank(self) -> int:
        """Sort key: lower rank is claimed first."""
        return PRIORITY_RANK[self]

    @classmethod
    def highest(cls, *priorities: JobPriority) -> JobPriority:
        """Return the most urgent of the given priorities."""
        return min(priorities, key=lambda p: p.rank)


PRIORITY_RANK: dict[JobPriority, int] = {
    JobPriority.HIGH: 0,
    JobPriority.NORMAL: 1,
    JobPriority.LOW: 2,
}


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TriggerSource(str, Enum):
    """What caused a job to be enqueued (stored in event_data for audit)."""

    OPMS_WRITE = "OPMS_WRITE"
    MANUAL_API = "MANUAL_API"
    MANUAL_PRODUCT_API = "MANUAL_PRODUCT_API"
    MANUAL_BATCH_API = "MANUAL_BATCH_API"
    POLLING_BACKUP = "POLLING_BACKUP"
    PRODUCT_FANOUT = "PRODUCT_FANOUT"


class ChangeSource(str, Enum):
    """Where a detected mutation came from."""

    OPMS_WRITE = "OPMS_WRITE"
    NETSUITE_WEBHOOK = "NETSUITE_WEBHOOK"
    POLLING_BACKUP = "POLLING_BACKUP"
    MANUAL_API = "MANUAL_API"


class SkipReason(str, Enum):
    """Eligibility failures, in the order they are evaluated."""

    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    ITEM_ARCHIVED = "ITEM_ARCHIVED"
    PRODUCT_ARCHIVED = "PRODUCT_ARCHIVED"
    MISSING_ITEM_CODE = "MISSING_ITEM_CODE"
    INVALID_ITEM_CODE = "INVALID_ITEM_CODE"
    MISSING_PRODUCT_NAME = "MISSING_PRODUCT_NAME"
    NO_COLORS = "NO_COLORS"
    NO_VENDOR = "NO_VENDOR"
    VENDOR_INACTIVE = "VENDOR_INACTIVE"
    NO_VENDOR_MAPPING = "NO_VENDOR_MAPPING"
    VENDOR_MAPPING_MISMATCH = "VENDOR_MAPPING_MISMATCH"


class SyncOutcome(str, Enum):
    """Last known outcome recorded on ItemSyncStatus."""

    SYNCED = "SYNCED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    DRY_RUN = "DRY_RUN"


class UpsertOperation(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"


class WebhookStatus(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    REJECTED = "rejected"


# ── Change Detection ────────────────────────────────────────────────────────


class Mutation(BaseModel):
    """A committed-in-this-transaction change to an OPMS row.

    ``table`` selects the sync-relevant field list; ``entity_type`` and
    ``entity_id`` name the entity whose remote record is affected.
    """

    table: str
    entity_type: EntityType
    entity_id: int
    event_type: EventType = EventType.UPDATE
    before: dict[str, Any] = Field(default_factory=dict)
    after: dict[str, Any] = Field(default_factory=dict)
    actor_id: int | None = None
    origin: ChangeSource = ChangeSource.OPMS_WRITE


class DetectionResult(BaseModel):
    """Outcome of ChangeDetector.record_mutation()."""

    change_log_id: int
    changed_fields: list[str] = Field(default_factory=list)
    job_id: int | None = None
    suppressed_reason: str | None = None


# ── Queue Store Read Models ─────────────────────────────────────────────────


class SyncJobRead(BaseModel):
    """Serialized SyncJob row."""

    id: int
    entity_type: EntityType
    entity_id: int
    event_type: EventType
    priority: JobPriority
    status: JobStatus
    retry_count: int = 0
    max_retries: int = 3
    error_message: str | None = None
    event_data: dict[str, Any] = Field(default_factory=dict)
    next_attempt_at: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    processed_at: datetime | None = None
    worker_id: str | None = None


class QueueDepth(BaseModel):
    """Queue counts by status and by (status, priority)."""

    by_status: dict[str, int] = Field(default_factory=dict)
    by_status_priority: dict[str, dict[str, int]] = Field(default_factory=dict)
    total: int = 0


class ItemSyncStatusRead(BaseModel):
    entity_type: EntityType
    entity_id: int
    remote_id: str | None = None
    last_outcome: SyncOutcome | None = None
    last_error: str | None = None
    last_job_id: int | None = None
    last_synced_at: datetime | None = None
    last_inbound_at: datetime | None = None
    last_inbound_remote_modified: datetime | None = None
    updated_at: datetime | None = None


class DryRunRead(BaseModel):
    id: int
    entity_type: EntityType
    entity_id: int
    operation: UpsertOperation
    remote_id: str | None = None
    request_payload: dict[str, Any] = Field(default_factory=dict)
    simulated_response: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ── Component Results ───────────────────────────────────────────────────────


class TransformResult(BaseModel):
    """Either a ready payload or a structured skip reason, never both."""

    entity_type: EntityType = EntityType.ITEM
    entity_id: int
    payload: dict[str, Any] | None = None
    skip_reason: SkipReason | None = None
    skip_detail: str | None = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


class UpsertResult(BaseModel):
    """Result of one create-or-update against the remote system."""

    operation: UpsertOperation
    remote_id: str | None = None
    dry_run: bool = False
    request: dict[str, Any] = Field(default_factory=dict)
    response: dict[str, Any] = Field(default_factory=dict)


class BatchResult(BaseModel):
    """Summary of one QueueProcessor.run_once() pass."""

    claimed: int = 0
    completed: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    halted: bool = False
    disabled: bool = False


class WebhookAck(BaseModel):
    """Acknowledgment returned to NetSuite for every webhook call."""

    status: WebhookStatus
    reason: str
    item_id: str | None = None
    opms_item_id: int | None = None
    applied_fields: dict[str, str] = Field(default_factory=dict)


class ProcessorStatus(BaseModel):
    """Worker flags reported by QueueProcessor.status()."""

    enabled: bool
    dry_run: bool = False
    running: bool = False
    halted: bool = False
    worker_id: str | None = None
    batch_size: int = 1
    last_run_at: datetime | None = None
    batches: int = 0
    processed: int = 0
    last_error: str | None = None


class DryRunReport(BaseModel):
    """Outcome of a single-entity dry run: either a skip or a persisted prediction."""

    entity_type: EntityType = EntityType.ITEM
    entity_id: int
    skip_reason: SkipReason | None = None
    skip_detail: str | None = None
    result: DryRunRead | None = None
