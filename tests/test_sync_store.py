"""Tests for SyncQueueStore: coalescing, claim ordering, retries and maintenance.

Runs against an in-memory aiosqlite database; SQLite ignores FOR UPDATE SKIP
LOCKED, so these cover the ordering and eligibility rules rather than row locks.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from src.app.sync.models import SyncJobModel
from src.app.sync.schemas import (
    EntityType,
    JobPriority,
    JobStatus,
    SyncOutcome,
    UpsertOperation,
    UpsertResult,
)
from src.app.sync.store import as_utc, coalesce_key, merge_event_data


async def _enqueue(store, session_factory, entity_id, priority=JobPriority.NORMAL, **event_data):
    async for session in session_factory():
        job_id, coalesced = await store.enqueue(
            session,
            EntityType.ITEM,
            entity_id,
            priority=priority,
            event_data=event_data,
        )
        await session.commit()
    return job_id, coalesced


async def _set_job(session_factory, job_id, **values):
    async for session in session_factory():
        await session.execute(update(SyncJobModel).where(SyncJobModel.id == job_id).values(**values))
        await session.commit()


# ── Enqueue / Coalescing ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job(store, session_factory):
    job_id, coalesced = await _enqueue(store, session_factory, 10, trigger_source="OPMS_WRITE")

    assert coalesced is False
    job = await store.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.priority == JobPriority.NORMAL
    assert job.retry_count == 0
    assert job.max_retries == 3
    assert job.event_data["trigger_source"] == "OPMS_WRITE"


@pytest.mark.asyncio
async def test_enqueue_coalesces_into_pending_job_and_upgrades_priority(store, session_factory):
    first_id, _ = await _enqueue(
        store, session_factory, 10, JobPriority.LOW, changed_fields=["colors"]
    )
    second_id, coalesced = await _enqueue(
        store, session_factory, 10, JobPriority.HIGH, changed_fields=["code", "colors"]
    )

    assert coalesced is True
    assert second_id == first_id
    job = await store.get_job(first_id)
    assert job.priority == JobPriority.HIGH
    assert job.event_data["changed_fields"] == ["colors", "code"]
    assert job.event_data["coalesced_count"] == 1
    assert len(await store.list_jobs(entity_id=10)) == 1


@pytest.mark.asyncio
async def test_coalescing_never_lowers_priority(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 10, JobPriority.HIGH)
    await _enqueue(store, session_factory, 10, JobPriority.LOW)

    job = await store.get_job(job_id)
    assert job.priority == JobPriority.HIGH


@pytest.mark.asyncio
async def test_enqueue_while_processing_inserts_new_pending_job(store, session_factory):
    first_id, _ = await _enqueue(store, session_factory, 10)
    claimed = await store.claim_next(1, worker_id="w1")
    assert [j.id for j in claimed] == [first_id]

    second_id, coalesced = await _enqueue(store, session_factory, 10)

    assert coalesced is False
    assert second_id != first_id
    assert (await store.get_job(second_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_enqueue_that_loses_insert_race_coalesces_into_winner(
    store, session_factory, monkeypatch
):
    winner_id, _ = await _enqueue(store, session_factory, 10, changed_fields=["code"])

    # The second writer looked before the winner committed and saw nothing
    original = store._pending_job
    lookups = []

    async def stale_lookup(*args):
        lookups.append(args)
        if len(lookups) == 1:
            return None
        return await original(*args)

    monkeypatch.setattr(store, "_pending_job", stale_lookup)

    job_id, coalesced = await _enqueue(store, session_factory, 10, changed_fields=["colors"])

    assert coalesced is True
    assert job_id == winner_id
    assert len(lookups) == 2
    assert len(await store.list_jobs(entity_id=10)) == 1
    assert (await store.get_job(winner_id)).event_data["changed_fields"] == ["code", "colors"]


@pytest.mark.asyncio
async def test_claim_frees_coalesce_key(store, session_factory):
    first_id, _ = await _enqueue(store, session_factory, 10)
    await store.claim_next(1, worker_id="w1")
    second_id, _ = await _enqueue(store, session_factory, 10)

    async for session in session_factory():
        keys = dict(
            (await session.execute(select(SyncJobModel.id, SyncJobModel.coalesce_key))).all()
        )

    assert keys == {first_id: None, second_id: coalesce_key(EntityType.ITEM, 10)}


def test_merge_event_data_unions_changed_fields():
    merged = merge_event_data(
        {"changed_fields": ["a", "b"], "reason": "old"},
        {"changed_fields": ["b", "c"], "reason": "new"},
    )
    assert merged["changed_fields"] == ["a", "b", "c"]
    assert merged["reason"] == "new"
    assert merged["coalesced_count"] == 1


# ── Claiming ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_claim_orders_by_priority_then_fifo(store, session_factory):
    low_id, _ = await _enqueue(store, session_factory, 1, JobPriority.LOW)
    normal_a, _ = await _enqueue(store, session_factory, 2, JobPriority.NORMAL)
    high_id, _ = await _enqueue(store, session_factory, 3, JobPriority.HIGH)
    normal_b, _ = await _enqueue(store, session_factory, 4, JobPriority.NORMAL)

    claimed = await store.claim_next(4, worker_id="w1")

    assert [j.id for j in claimed] == [high_id, normal_a, normal_b, low_id]
    assert all(j.status == JobStatus.PROCESSING for j in claimed)
    assert all(j.worker_id == "w1" for j in claimed)
    assert all(j.started_at is not None for j in claimed)


@pytest.mark.asyncio
async def test_claim_returns_empty_when_queue_empty(store):
    assert await store.claim_next(5) == []


@pytest.mark.asyncio
async def test_claimed_job_is_not_claimed_again(store, session_factory):
    await _enqueue(store, session_factory, 1)

    first = await store.claim_next(1)
    second = await store.claim_next(1)

    assert len(first) == 1
    assert second == []


@pytest.mark.asyncio
async def test_claim_skips_entity_with_processing_job(store, session_factory):
    await _enqueue(store, session_factory, 1)
    await store.claim_next(1)
    await _enqueue(store, session_factory, 1)
    other_id, _ = await _enqueue(store, session_factory, 2)

    claimed = await store.claim_next(5)

    assert [j.id for j in claimed] == [other_id]


@pytest.mark.asyncio
async def test_claim_respects_backoff_gate(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)
    await _set_job(
        session_factory,
        job_id,
        next_attempt_at=datetime.now(timezone.utc) + timedelta(minutes=5),
    )

    assert await store.claim_next(1) == []

    await _set_job(
        session_factory,
        job_id,
        next_attempt_at=datetime.now(timezone.utc) - timedelta(seconds=1),
    )
    assert [j.id for j in await store.claim_next(1)] == [job_id]


# ── Transitions ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_schedule_retry_increments_count_and_sets_gate(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)
    await store.claim_next(1)

    job = await store.schedule_retry(job_id, "timed out", delay_seconds=30)

    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.error_message == "timed out"
    assert job.next_attempt_at > datetime.now(timezone.utc)
    assert job.worker_id is None


@pytest.mark.asyncio
async def test_mark_completed_stores_result(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1, trigger_source="MANUAL_API")
    await store.claim_next(1)

    job = await store.mark_completed(job_id, {"operation": "CREATE", "remote_id": "77"})

    assert job.status == JobStatus.COMPLETED
    assert job.processed_at is not None
    assert job.event_data["result"]["remote_id"] == "77"
    assert job.event_data["trigger_source"] == "MANUAL_API"


@pytest.mark.asyncio
async def test_release_returns_job_without_consuming_retry(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)
    await store.claim_next(1)

    job = await store.release(job_id)

    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert await store.release(job_id) is None


@pytest.mark.asyncio
async def test_requeue_only_moves_failed_jobs(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)
    assert await store.requeue(job_id) is None

    await store.claim_next(1)
    await store.schedule_retry(job_id, "boom", 0)
    await store.claim_next(1)
    await store.mark_failed(job_id, "boom")

    job = await store.requeue(job_id)

    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert job.error_message is None
    assert await store.requeue(999) is None


@pytest.mark.asyncio
async def test_retry_failed_filters_by_error_substring(store, session_factory):
    timeout_id, _ = await _enqueue(store, session_factory, 1)
    invalid_id, _ = await _enqueue(store, session_factory, 2)
    await store.claim_next(2)
    await store.mark_failed(timeout_id, "NetSuite upsert timed out: read timeout")
    await store.mark_failed(invalid_id, "NetSuite create failed: INVALID_FLD_VALUE")

    job_ids = await store.retry_failed(error_filter="TIMED OUT")

    assert job_ids == [timeout_id]
    assert (await store.get_job(timeout_id)).status == JobStatus.PENDING
    assert (await store.get_job(invalid_id)).status == JobStatus.FAILED

    assert await store.retry_failed() == [invalid_id]


@pytest.mark.asyncio
async def test_recover_stale_resets_old_processing_jobs(store, session_factory):
    stale_id, _ = await _enqueue(store, session_factory, 1)
    fresh_id, _ = await _enqueue(store, session_factory, 2)
    await store.claim_next(2, worker_id="dead-worker")
    await _set_job(
        session_factory,
        stale_id,
        started_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )

    recovered = await store.recover_stale(older_than_seconds=600)

    assert recovered == [stale_id]
    job = await store.get_job(stale_id)
    assert job.status == JobStatus.PENDING
    assert job.event_data["stale_worker_id"] == "dead-worker"
    assert (await store.get_job(fresh_id)).status == JobStatus.PROCESSING


# ── Inspection & Maintenance ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_queue_depth_counts_by_status_and_priority(store, session_factory):
    await _enqueue(store, session_factory, 1, JobPriority.HIGH)
    await _enqueue(store, session_factory, 2, JobPriority.LOW)
    await _enqueue(store, session_factory, 3, JobPriority.LOW)
    await store.claim_next(1)

    depth = await store.queue_depth()

    assert depth.total == 3
    assert depth.by_status["PENDING"] == 2
    assert depth.by_status["PROCESSING"] == 1
    assert depth.by_status["FAILED"] == 0
    assert depth.by_status_priority["PENDING"] == {"LOW": 2}
    assert depth.by_status_priority["PROCESSING"] == {"HIGH": 1}


@pytest.mark.asyncio
async def test_cleanup_completed_removes_only_old_completed_jobs(store, session_factory):
    old_id, _ = await _enqueue(store, session_factory, 1)
    new_id, _ = await _enqueue(store, session_factory, 2)
    await store.claim_next(2)
    await store.mark_completed(old_id)
    await store.mark_completed(new_id)
    await _set_job(
        session_factory,
        old_id,
        processed_at=datetime.now(timezone.utc) - timedelta(days=10),
    )

    removed = await store.cleanup_completed(older_than_days=7)

    assert removed == 1
    assert await store.get_job(old_id) is None
    assert await store.get_job(new_id) is not None


@pytest.mark.asyncio
async def test_cancel_pending_deletes_only_pending(store, session_factory):
    await _enqueue(store, session_factory, 1)
    await store.claim_next(1)
    await _enqueue(store, session_factory, 1)

    assert await store.cancel_pending(EntityType.ITEM, 1) == 1
    remaining = await store.list_jobs(entity_id=1)
    assert [j.status for j in remaining] == [JobStatus.PROCESSING]


@pytest.mark.asyncio
async def test_record_sync_status_upserts_row(store):
    await store.record_sync_status(EntityType.ITEM, 7, SyncOutcome.RETRYING, error="timeout")
    status = await store.record_sync_status(
        EntityType.ITEM, 7, SyncOutcome.SYNCED, remote_id="900", job_id=3
    )

    assert status.last_outcome == SyncOutcome.SYNCED
    assert status.remote_id == "900"
    assert status.last_error is None
    assert status.last_synced_at is not None

    fetched = await store.get_sync_status(EntityType.ITEM, 7)
    assert fetched.last_job_id == 3
    assert await store.get_sync_status(EntityType.ITEM, 8) is None


@pytest.mark.asyncio
async def test_record_and_list_dry_runs(store):
    result = UpsertResult(
        operation=UpsertOperation.UPDATE,
        remote_id="12",
        dry_run=True,
        request={"itemId": "1234-5678"},
        response={"simulated": True},
    )
    first = await store.record_dry_run(EntityType.ITEM, 5, result)
    second = await store.record_dry_run(EntityType.ITEM, 5, result)

    runs = await store.list_dry_runs(5)

    assert [r.id for r in runs] == [second.id, first.id]
    assert runs[0].request_payload == {"itemId": "1234-5678"}
    assert runs[0].operation == UpsertOperation.UPDATE


def test_as_utc_attaches_timezone_to_naive_values():
    naive = datetime(2026, 1, 2, 3, 4, 5)
    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(None) is None


@pytest.mark.asyncio
async def test_job_rows_persist_string_enums(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1, JobPriority.HIGH)
    async for session in session_factory():
        row = (await session.execute(select(SyncJobModel).where(SyncJobModel.id == job_id))).scalar_one()
        assert row.priority == "HIGH"
        assert row.entity_type == "ITEM"


# ── Claim Ownership ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_late_write_from_recovered_worker_is_ignored(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)
    await store.claim_next(1, worker_id="worker-a")
    assert await store.recover_stale(older_than_seconds=0) == [job_id]
    assert [j.id for j in await store.claim_next(1, worker_id="worker-b")] == [job_id]

    assert await store.mark_started(job_id, worker_id="worker-a") is None
    assert await store.schedule_retry(job_id, "slow", 30, worker_id="worker-a") is None
    assert await store.mark_completed(job_id, worker_id="worker-a") is None
    assert await store.mark_failed(job_id, "slow", worker_id="worker-a") is None
    assert await store.release(job_id, worker_id="worker-a") is None

    job = await store.get_job(job_id)
    assert job.status == JobStatus.PROCESSING
    assert job.worker_id == "worker-b"
    assert job.retry_count == 0

    # worker-b still owns the job, so no second claim is possible
    await _enqueue(store, session_factory, 1)
    assert await store.claim_next(1, worker_id="worker-c") == []

    done = await store.mark_completed(job_id, {"operation": "UPDATE"}, worker_id="worker-b")
    assert done.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_transitions_require_processing(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)

    assert await store.mark_completed(job_id) is None
    assert await store.schedule_retry(job_id, "boom", 0) is None
    assert (await store.get_job(job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_mark_started_restamps_claim_time(store, session_factory):
    job_id, _ = await _enqueue(store, session_factory, 1)
    await store.claim_next(1, worker_id="w1")
    await _set_job(
        session_factory,
        job_id,
        started_at=datetime.now(timezone.utc) - timedelta(hours=1),
    )

    job = await store.mark_started(job_id, worker_id="w1")

    assert job.started_at > datetime.now(timezone.utc) - timedelta(minutes=1)
    assert await store.recover_stale(older_than_seconds=600) == []
