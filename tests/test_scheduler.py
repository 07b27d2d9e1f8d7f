"""Tests for SyncScheduler maintenance jobs and lifecycle."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.app.sync.scheduler import SyncScheduler


def _scheduler(detector=None, store=None, **kwargs) -> SyncScheduler:
    return SyncScheduler(
        detector or MagicMock(),
        store or MagicMock(),
        polling_interval_seconds=kwargs.get("polling_interval_seconds", 60),
        stale_after_seconds=kwargs.get("stale_after_seconds", 600),
        retention_days=kwargs.get("retention_days", 7),
    )


class TestSyncSchedulerJobs:
    @pytest.mark.asyncio
    async def test_first_poll_looks_back_two_intervals(self) -> None:
        detector = MagicMock()
        detector.detect_missed_changes = AsyncMock(return_value=[1, 2])
        scheduler = _scheduler(detector=detector)

        before = datetime.now(timezone.utc)
        assert await scheduler.poll_missed_changes() == 2

        since = detector.detect_missed_changes.await_args.args[0]
        assert before - timedelta(seconds=121) <= since <= before - timedelta(seconds=119)

    @pytest.mark.asyncio
    async def test_next_poll_starts_where_the_last_one_ended(self) -> None:
        detector = MagicMock()
        detector.detect_missed_changes = AsyncMock(return_value=[])
        scheduler = _scheduler(detector=detector)

        await scheduler.poll_missed_changes()
        first_end = datetime.now(timezone.utc)
        await scheduler.poll_missed_changes()

        second_since = detector.detect_missed_changes.await_args_list[1].args[0]
        assert second_since <= first_end
        assert second_since > first_end - timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_failed_poll_keeps_window(self) -> None:
        detector = MagicMock()
        detector.detect_missed_changes = AsyncMock(side_effect=RuntimeError("db down"))
        scheduler = _scheduler(detector=detector)

        assert await scheduler.poll_missed_changes() == 0
        assert await scheduler.poll_missed_changes() == 0

        first, second = (call.args[0] for call in detector.detect_missed_changes.await_args_list)
        assert second - first < timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_recover_stale_uses_threshold(self) -> None:
        store = MagicMock()
        store.recover_stale = AsyncMock(return_value=[7, 8, 9])
        scheduler = _scheduler(store=store, stale_after_seconds=900)

        assert await scheduler.recover_stale_jobs() == 3
        store.recover_stale.assert_awaited_once_with(900)

    @pytest.mark.asyncio
    async def test_cleanup_uses_retention(self) -> None:
        store = MagicMock()
        store.cleanup_completed = AsyncMock(return_value=12)
        scheduler = _scheduler(store=store, retention_days=3)

        assert await scheduler.cleanup_completed_jobs() == 12
        store.cleanup_completed.assert_awaited_once_with(3)

    @pytest.mark.asyncio
    async def test_cleanup_failure_is_contained(self) -> None:
        store = MagicMock()
        store.cleanup_completed = AsyncMock(side_effect=RuntimeError("lock timeout"))

        assert await _scheduler(store=store).cleanup_completed_jobs() == 0


class TestSyncSchedulerLifecycle:
    @pytest.mark.asyncio
    async def test_starts_once_and_stops(self) -> None:
        scheduler = _scheduler()

        assert scheduler.start() is True
        assert scheduler.running is True
        assert scheduler.start() is False

        scheduler.stop()
        assert scheduler.running is False

    @pytest.mark.asyncio
    async def test_registers_maintenance_jobs(self) -> None:
        scheduler = _scheduler()
        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
        finally:
            scheduler.stop()

        assert job_ids == {"sync_polling_backup", "sync_stale_recovery", "sync_completed_cleanup"}
