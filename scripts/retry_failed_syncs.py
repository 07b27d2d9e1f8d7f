#!/usr/bin/env python3
"""Bulk retry tool for FAILED sync jobs.

Usage:
    uv run python scripts/retry_failed_syncs.py --list
    uv run python scripts/retry_failed_syncs.py --error-filter "timed out" --limit 200
    uv run python scripts/retry_failed_syncs.py --job 4711

Moves FAILED jobs back to PENDING with a fresh retry budget so the running
worker picks them up. Reads DATABASE_URL from environment or .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))

import structlog  # noqa: E402

from src.app.config import get_settings  # noqa: E402
from src.app.core.database import close_db, get_session  # noqa: E402
from src.app.sync.schemas import JobStatus  # noqa: E402
from src.app.sync.store import SyncQueueStore  # noqa: E402

logger = structlog.get_logger(__name__)


async def list_failed(store: SyncQueueStore, limit: int) -> None:
    jobs = await store.list_jobs(status=JobStatus.FAILED, limit=limit)
    if not jobs:
        print("No FAILED jobs.")
        return
    for job in jobs:
        error = (job.error_message or "").splitlines()[0][:100] if job.error_message else ""
        print(f"{job.id:>8}  {job.entity_type.value:<8} {job.entity_id:>8}  retries={job.retry_count}  {error}")
    print(f"\n{len(jobs)} FAILED job(s) shown.")


async def main_async(args: argparse.Namespace) -> int:
    settings = get_settings()
    store = SyncQueueStore(get_session, default_max_retries=settings.SYNC_MAX_RETRIES)
    try:
        if args.list:
            await list_failed(store, args.limit)
            return 0

        if args.job is not None:
            job = await store.requeue(args.job)
            if job is None:
                print(f"Job {args.job} not found or not FAILED.", file=sys.stderr)
                return 1
            print(f"Requeued job {job.id} ({job.entity_type.value} {job.entity_id}).")
            return 0

        job_ids = await store.retry_failed(args.error_filter, args.limit)
        logger.info("sync.retry_script_completed", requeued=len(job_ids), error_filter=args.error_filter)
        print(f"Requeued {len(job_ids)} FAILED job(s).")
        return 0
    finally:
        await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry FAILED OPMS -> NetSuite sync jobs")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--list", action="store_true", help="List FAILED jobs without changing them")
    group.add_argument("--job", type=int, default=None, help="Requeue a single job by id")
    parser.add_argument("--error-filter", default=None, help="Only retry jobs whose error contains this text")
    parser.add_argument("--limit", type=int, default=500, help="Maximum number of jobs to touch")

    args = parser.parse_args()
    sys.exit(asyncio.run(main_async(args)))


if __name__ == "__main__":
    main()
