"""Tests for the ChangeDetector outbox, manual triggers and polling backup.

Writes go through OpmsRepository so each test exercises the real
transaction shape: business row, change log entry and queued job together.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select, update

from src.app.opms.models import ItemModel, ProductModel
from src.app.sync.detector import (
    SUPPRESSED_NOT_RELEVANT,
    SUPPRESSED_SYNC_ORIGIN,
    EntityNotFoundError,
    changed_fields,
)
from src.app.sync.models import ChangeLogModel
from src.app.sync.schemas import (
    ChangeSource,
    EntityType,
    EventType,
    JobPriority,
    JobStatus,
    Mutation,
    TriggerSource,
)

SYNC_ACTOR_ID = 1
OPMS_USER_ID = 42


async def _change_log(session_factory) -> list[ChangeLogModel]:
    async for session in session_factory():
        rows = (await session.execute(select(ChangeLogModel).order_by(ChangeLogModel.id))).scalars().all()
    return list(rows)


# ── changed_fields ───────────────────────────────────────────────────────────


def test_changed_fields_compares_numbers_by_value():
    before = {"width": Decimal("54.000"), "name": "Tweed"}
    after = {"width": 54, "name": "Tweed II"}
    assert changed_fields(before, after) == ["name"]


def test_changed_fields_insert_reports_every_field():
    assert changed_fields({}, {"code": "1234-5678", "colors": []}, EventType.INSERT) == [
        "code",
        "colors",
    ]


# ── Outbox ───────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_relevant_item_update_enqueues_item_job(repository, store, session_factory, catalog):
    detection = await repository.update_item(
        catalog["item_id"], {"colors": ["Navy"]}, actor_id=OPMS_USER_ID
    )

    assert detection.job_id is not None
    assert detection.suppressed_reason is None
    assert detection.changed_fields == ["colors"]

    job = await store.get_job(detection.job_id)
    assert job.entity_type == EntityType.ITEM
    assert job.entity_id == catalog["item_id"]
    assert job.priority == JobPriority.NORMAL
    assert job.event_data["trigger_source"] == TriggerSource.OPMS_WRITE.value
    assert job.event_data["changed_fields"] == ["colors"]

    entries = await _change_log(session_factory)
    assert len(entries) == 1
    assert entries[0].job_created is True
    assert entries[0].job_id == detection.job_id


@pytest.mark.asyncio
async def test_irrelevant_product_update_is_logged_but_not_queued(repository, store, catalog):
    detection = await repository.update_product(
        catalog["product_id"], {"product_type": "D"}, actor_id=OPMS_USER_ID
    )

    assert detection.job_id is None
    assert detection.suppressed_reason == SUPPRESSED_NOT_RELEVANT
    assert (await store.queue_depth()).total == 0


@pytest.mark.asyncio
async def test_unchanged_value_is_not_queued(repository, store, catalog):
    detection = await repository.update_item(
        catalog["item_id"], {"vendor_color": "Slate"}, actor_id=OPMS_USER_ID
    )

    assert detection.changed_fields == []
    assert detection.job_id is None


@pytest.mark.asyncio
async def test_sync_actor_write_is_suppressed(repository, store, catalog):
    detection = await repository.update_item(
        catalog["item_id"], {"colors": ["Navy"]}, actor_id=SYNC_ACTOR_ID
    )

    assert detection.job_id is None
    assert detection.suppressed_reason == SUPPRESSED_SYNC_ORIGIN
    assert (await store.queue_depth()).total == 0


@pytest.mark.asyncio
async def test_price_change_enqueues_product_job(repository, store, catalog):
    detection = await repository.set_prices(
        catalog["product_id"], {"p_res_cut": Decimal("52.00")}, actor_id=OPMS_USER_ID
    )

    job = await store.get_job(detection.job_id)
    assert job.entity_type == EntityType.PRODUCT
    assert job.entity_id == catalog["product_id"]
    assert job.event_data["table"] == "opms_product_prices"


@pytest.mark.asyncio
async def test_webhook_origin_price_write_is_suppressed(repository, detector, session_factory, catalog):
    async for session in session_factory():
        detection = await repository.apply_prices(
            session,
            catalog["product_id"],
            {"p_res_cut": Decimal("60.00")},
            actor_id=OPMS_USER_ID,
            origin=ChangeSource.NETSUITE_WEBHOOK,
        )
        await session.commit()

    assert detection.suppressed_reason == SUPPRESSED_SYNC_ORIGIN
    entries = await _change_log(session_factory)
    assert entries[-1].change_source == ChangeSource.NETSUITE_WEBHOOK.value


@pytest.mark.asyncio
async def test_record_mutation_rolls_back_with_caller(detector, store, session_factory):
    async for session in session_factory():
        await detector.record_mutation(
            session,
            Mutation(
                table="opms_items",
                entity_type=EntityType.ITEM,
                entity_id=99,
                before={"code": None},
                after={"code": "1234-0000"},
                actor_id=OPMS_USER_ID,
            ),
        )
        await session.rollback()

    assert (await store.queue_depth()).total == 0
    assert await _change_log(session_factory) == []


@pytest.mark.asyncio
async def test_unknown_column_is_rejected(repository, catalog):
    with pytest.raises(ValueError, match="Unknown or read-only"):
        await repository.update_item(catalog["item_id"], {"id": 5}, actor_id=OPMS_USER_ID)


@pytest.mark.asyncio
async def test_create_item_records_insert(repository, store, catalog):
    item_id, detection = await repository.create_item(
        {"product_id": catalog["product_id"], "code": "2222-3333", "colors": ["Red"]},
        actor_id=OPMS_USER_ID,
    )

    job = await store.get_job(detection.job_id)
    assert job.entity_id == item_id
    assert job.event_type == EventType.INSERT


# ── Manual Triggers ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_trigger_item_defaults_to_high_priority(detector, store, catalog):
    job_id = await detector.trigger_item(catalog["item_id"], reason="customer escalation")

    job = await store.get_job(job_id)
    assert job.priority == JobPriority.HIGH
    assert job.event_data["trigger_source"] == TriggerSource.MANUAL_API.value
    assert job.event_data["reason"] == "customer escalation"
    assert job.event_data["item_code"] == catalog["item_code"]


@pytest.mark.asyncio
async def test_trigger_item_coalesces_with_pending_write(repository, detector, store, catalog):
    detection = await repository.update_item(
        catalog["item_id"], {"colors": ["Navy"]}, actor_id=OPMS_USER_ID
    )
    job_id = await detector.trigger_item(catalog["item_id"])

    assert job_id == detection.job_id
    assert (await store.get_job(job_id)).priority == JobPriority.HIGH


@pytest.mark.asyncio
async def test_trigger_item_unknown_raises(detector):
    with pytest.raises(EntityNotFoundError):
        await detector.trigger_item(12345)


@pytest.mark.asyncio
async def test_trigger_product_queues_live_items(detector, store, catalog):
    job_ids = await detector.trigger_product(catalog["product_id"])

    jobs = [await store.get_job(job_id) for job_id in job_ids]
    assert sorted(j.entity_id for j in jobs) == sorted(
        [catalog["item_id"], catalog["second_item_id"]]
    )
    assert all(j.priority == JobPriority.NORMAL for j in jobs)


@pytest.mark.asyncio
async def test_trigger_product_unknown_raises(detector):
    with pytest.raises(EntityNotFoundError):
        await detector.trigger_product(12345)


@pytest.mark.asyncio
async def test_trigger_batch_skips_archived_and_uncoded_items(detector, store, session_factory, catalog):
    async for session in session_factory():
        session.add(ItemModel(product_id=catalog["product_id"], code=None, colors=["Red"]))
        await session.commit()

    job_ids = await detector.trigger_batch(limit=10)

    jobs = [await store.get_job(job_id) for job_id in job_ids]
    assert sorted(j.entity_id for j in jobs) == sorted(
        [catalog["item_id"], catalog["second_item_id"]]
    )
    assert all(j.priority == JobPriority.LOW for j in jobs)


# ── Polling Backup ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_detect_missed_changes_queues_items_without_jobs(detector, store, catalog):
    since = datetime.now(timezone.utc) - timedelta(hours=1)

    job_ids = await detector.detect_missed_changes(since)

    assert len(job_ids) == 2
    job = await store.get_job(job_ids[0])
    assert job.event_data["trigger_source"] == TriggerSource.POLLING_BACKUP.value
    assert job.status == JobStatus.PENDING

    # A second pass finds jobs for both items and queues nothing
    assert await detector.detect_missed_changes(since) == []


@pytest.mark.asyncio
async def test_detect_missed_changes_ignores_sync_actor_writes(detector, session_factory, catalog):
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    async for session in session_factory():
        await session.execute(
            update(ProductModel)
            .where(ProductModel.id == catalog["product_id"])
            .values(updated_at=old)
        )
        await session.execute(
            update(ItemModel)
            .where(ItemModel.id == catalog["second_item_id"])
            .values(updated_by=SYNC_ACTOR_ID, updated_at=datetime.now(timezone.utc))
        )
        await session.commit()

    job_ids = await detector.detect_missed_changes(datetime.now(timezone.utc) - timedelta(hours=1))

    assert len(job_ids) == 1


@pytest.mark.asyncio
async def test_detect_missed_changes_skips_items_with_recent_jobs(repository, detector, catalog):
    since = datetime.now(timezone.utc) - timedelta(hours=1)
    await repository.update_item(catalog["item_id"], {"colors": ["Navy"]}, actor_id=OPMS_USER_ID)

    job_ids = await detector.detect_missed_changes(since)

    assert len(job_ids) == 1


@pytest.mark.asyncio
async def test_detect_missed_changes_leaves_logged_irrelevant_writes_alone(
    repository, detector, session_factory, catalog
):
    old = datetime.now(timezone.utc) - timedelta(hours=2)
    async for session in session_factory():
        await session.execute(update(ProductModel).values(updated_at=old))
        await session.execute(update(ItemModel).values(updated_at=old))
        await session.commit()
    since = datetime.now(timezone.utc) - timedelta(hours=1)

    detection = await repository.update_product(
        catalog["product_id"], {"product_type": "D"}, actor_id=OPMS_USER_ID
    )
    assert detection.suppressed_reason == SUPPRESSED_NOT_RELEVANT

    assert await detector.detect_missed_changes(since) == []

    # The same kind of edit made with bulk SQL has no log entry and is caught
    async for session in session_factory():
        await session.execute(
            update(ItemModel)
            .where(ItemModel.id == catalog["second_item_id"])
            .values(updated_at=datetime.now(timezone.utc))
        )
        await session.commit()

    job_ids = await detector.detect_missed_changes(since)
    assert len(job_ids) == 1
