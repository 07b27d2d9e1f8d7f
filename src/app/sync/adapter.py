"""Remote adapter abstract base class -- idempotent upsert with loop-prevention marker.

Every remote backend (NetSuite RESTlet today) implements search/create/update.
The concrete upsert() on the base class owns the create-or-update decision so
that every backend gets the same idempotence, marker stamping and dry-run
behavior.

Exception hierarchy (what the QueueProcessor reacts to):
- TransientRemoteError: Retry later with backoff
- PermanentRemoteError: Fail the job immediately
- RemoteAuthError: Credentials rejected, halt the processor
- RemoteNotFoundError: Target record vanished between search and update
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import structlog

from src.app.sync.field_mapping import SYNC_ACTOR_FIELD, SYNC_SOURCE_FIELD, SYNC_SOURCE_VALUE
from src.app.sync.schemas import UpsertOperation, UpsertResult

logger = structlog.get_logger(__name__)

NATURAL_KEY_FIELD = "itemId"


# ── Errors ──────────────────────────────────────────────────────────────────


class RemoteAdapterError(Exception):
    """Base class for remote adapter failures."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientRemoteError(RemoteAdapterError):
    """Timeouts, throttling, 5xx and connection failures."""


class PermanentRemoteError(RemoteAdapterError):
    """Validation or other errors that will not succeed on retry."""


class RemoteAuthError(RemoteAdapterError):
    """Authentication or authorization rejected by the remote system."""


class RemoteNotFoundError(RemoteAdapterError):
    """The addressed remote record does not exist."""


# ── Adapter ─────────────────────────────────────────────────────────────────


class RemoteAdapter(ABC):
    """Abstract interface for the remote ERP.

    Methods:
        search: Find a remote record by natural key, None when absent.
        create: Create a record, return the remote response.
        update: Update only the given fields of a record, return the response.
        upsert: Search, then update or create (concrete).

    Args:
        sync_actor_id: Stamped on every outbound write next to the source marker.
    """

    def __init__(self, sync_actor_id: int = 1) -> None:
        self._sync_actor_id = sync_actor_id

    @abstractmethod
    async def search(self, natural_key: str) -> dict[str, Any] | None:
        """Return the remote record for natural_key (must include "id"), or None."""
        ...

    @abstractmethod
    async def create(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Create a remote record. The response must include "id"."""
        ...

    @abstractmethod
    async def update(self, remote_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Update a remote record.

        Raises:
            RemoteNotFoundError: If remote_id no longer exists.
        """
        ...

    def with_marker(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of payload carrying the sync source marker."""
        return {
            **payload,
            SYNC_SOURCE_FIELD: SYNC_SOURCE_VALUE,
            SYNC_ACTOR_FIELD: self._sync_actor_id,
        }

    async def upsert(self, payload: dict[str, Any], dry_run: bool = False) -> UpsertResult:
        """Create or update the remote record identified by payload["itemId"].

        Found records are updated with exactly the payload fields; absent ones
        are created. An update racing a remote delete falls back to create.
        In dry-run mode the search and request building run unchanged and
        the mutating call is replaced by a simulated response.

        Raises:
            PermanentRemoteError: If the payload has no natural key.
        """
        natural_key = payload.get(NATURAL_KEY_FIELD)
        if not natural_key:
            raise PermanentRemoteError(f"Payload is missing natural key {NATURAL_KEY_FIELD!r}")

        request = self.with_marker(payload)
        existing = await self.search(natural_key)

        if existing is not None:
            remote_id = str(existing["id"])
            if dry_run:
                return self._simulated(UpsertOperation.UPDATE, remote_id, request)
            try:
                response = await self.update(remote_id, request)
            except RemoteNotFoundError:
                logger.warning(
                    "sync.remote_update_not_found",
                    natural_key=natural_key,
                    remote_id=remote_id,
                )
            else:
                logger.info("sync.remote_updated", natural_key=natural_key, remote_id=remote_id)
                return UpsertResult(
                    operation=UpsertOperation.UPDATE,
                    remote_id=str(response.get("id", remote_id)),
                    request=request,
                    response=response,
                )

        if dry_run:
            return self._simulated(UpsertOperation.CREATE, None, request)

        response = await self.create(request)
        remote_id = response.get("id")
        logger.info("sync.remote_created", natural_key=natural_key, remote_id=remote_id)
        return UpsertResult(
            operation=UpsertOperation.CREATE,
            remote_id=str(remote_id) if remote_id is not None else None,
            request=request,
            response=response,
        )

    @staticmethod
    def _simulated(
        operation: UpsertOperation, remote_id: str | None, request: dict[str, Any]
    ) -> UpsertResult:
        response = {
            "success": True,
            "simulated": True,
            "operation": operation.value,
            "id": remote_id,
            "fields": sorted(request),
        }
        logger.info(
            "sync.remote_dry_run",
            operation=operation.value,
            natural_key=request.get(NATURAL_KEY_FIELD),
            remote_id=remote_id,
        )
        return UpsertResult(
            operation=operation,
            remote_id=remote_id,
            dry_run=True,
            request=request,
            response=response,
        )

    async def close(self) -> None:
        """Release client resources. No-op by default."""
        return None
