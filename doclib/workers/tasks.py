"""
Celery Tasks — periodic pipeline maintenance

Task: recover_pending_jobs
  Recovery sweep from the beat side: re-enqueues persisted pending extraction
  jobs, fails stale processing jobs, promotes due delayed entries. Covers
  deployments where no BackgroundProcessor is running its own sweep.

Task: retry_failed_index
  Re-enqueues index_failed files below the retry bound (priority 1).

Task: reschedule_deferred_backups
  Creates `file` syncs for files still flagged needs_backup, e.g. when the
  upload could not even enqueue its sync.

Task: incremental_storage_sync
  One incremental sync per hybrid organization with background sync enabled.

Each task builds the pipeline inside its own event loop and disposes the
database engine on the way out; asyncpg connections must not outlive the
loop that opened them.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from doclib.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


@asynccontextmanager
async def _pipeline() -> AsyncIterator[Any]:
    from doclib.db.session import engine
    from doclib.services.container import build_pipeline

    pipeline = build_pipeline()
    try:
        yield pipeline
    finally:
        await pipeline.close()
        await engine.dispose()


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@celery_app.task(name="doclib.workers.tasks.recover_pending_jobs")
def recover_pending_jobs() -> dict[str, Any]:
    return run_async(_recover_pending_jobs())


async def _recover_pending_jobs() -> dict[str, Any]:
    async with _pipeline() as pipeline:
        return await pipeline.processor.process_pending_database_jobs()


@celery_app.task(name="doclib.workers.tasks.retry_failed_index")
def retry_failed_index(limit: int = 200) -> dict[str, Any]:
    return run_async(_retry_failed_index(limit))


async def _retry_failed_index(limit: int) -> dict[str, Any]:
    async with _pipeline() as pipeline:
        return {"requeued": await pipeline.search.retry_failed(limit)}


@celery_app.task(name="doclib.workers.tasks.reschedule_deferred_backups")
def reschedule_deferred_backups(limit: int = 100) -> dict[str, Any]:
    return run_async(_reschedule_deferred_backups(limit))


async def _reschedule_deferred_backups(limit: int) -> dict[str, Any]:
    async with _pipeline() as pipeline:
        return {"scheduled": await pipeline.storage.schedule_backup_retries(limit)}


@celery_app.task(name="doclib.workers.tasks.incremental_storage_sync")
def incremental_storage_sync() -> dict[str, Any]:
    return run_async(_incremental_storage_sync())


async def _incremental_storage_sync() -> dict[str, Any]:
    async with _pipeline() as pipeline:
        sync_ids = await pipeline.storage.schedule_incremental_syncs()
    logger.info("Incremental syncs scheduled | count=%d", len(sync_ids))
    return {"sync_jobs": [str(s) for s in sync_ids]}
