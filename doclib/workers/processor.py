"""
Background Processor

Long-running asyncio service that drains the job queues. Constructed
explicitly with everything it touches; nothing is module-global.

    start()   requeue entries a crashed process left in flight (claimed longer
              ago than the queue's hard timeout), then spawn a fixed pool of
              worker tasks per queue plus the recovery sweep
    stop()    stop taking new entries and wait for in-flight jobs (drain)

Workers block on the queue with a bounded pop timeout, execute one job to
completion under a hard timeout, ack the entry, and loop. Job kinds are
dispatched by pattern matching:

    ExtractionJob  claim → execute → complete | fail/retry   (ExtractionService)
    IndexJob       SearchIndexSynchronizer.index_file
    SyncJob        HybridStorageManager.process_sync_job
    AIJob          injected handler; bounded re-enqueue on failure

Recovery sweep (every recovery_interval_seconds, process_pending_database_jobs):
    - re-enqueue persisted `pending` extraction jobs (queue outage, lost entry)
    - fail-and-retry `processing` jobs older than stale_processing_seconds
    - promote delayed (backoff) entries that are due
    - requeue in-flight entries older than their queue's hard timeout
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import replace
from typing import Awaitable, Callable

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import PipelineError, TransientIOError, error_code
from doclib.processing.strategy import ESTIMATED_DURATION_MS
from doclib.search.synchronizer import SearchIndexSynchronizer
from doclib.services.extraction import ExtractionService
from doclib.storage.hybrid import HybridStorageManager
from doclib.workers.jobs import (
    AIJob,
    ExtractionJob,
    IndexJob,
    Job,
    QueueName,
    SyncJob,
    retry_delay_seconds,
)
from doclib.workers.queue import JobQueue

logger = logging.getLogger(__name__)

AIHandler = Callable[[AIJob], Awaitable[None]]

# Pause after a queue outage before a worker polls again
_OUTAGE_BACKOFF_SECONDS = 2.0

# Slack on top of a queue's hard timeout before an unacked entry counts as abandoned
_INFLIGHT_MARGIN_SECONDS = 60.0


class BackgroundProcessor:

    def __init__(
        self,
        queue: JobQueue,
        extraction: ExtractionService,
        storage: HybridStorageManager,
        search: SearchIndexSynchronizer,
        cfg: Settings | None = None,
        ai_handler: AIHandler | None = None,
    ) -> None:
        self._queue = queue
        self._extraction = extraction
        self._storage = storage
        self._search = search
        self._cfg = cfg or default_settings
        self._ai_handler = ai_handler

        self._workers: dict[QueueName, int] = {
            QueueName.EXTRACTION:    self._cfg.extraction_workers,
            QueueName.INDEXING:      self._cfg.indexing_workers,
            QueueName.STORAGE_SYNC:  self._cfg.sync_workers,
            QueueName.AI_PROCESSING: self._cfg.ai_workers,
        }
        self._active: dict[QueueName, int] = {q: 0 for q in QueueName}
        self._stats = {"processed": 0, "failed": 0}

        self._tasks: list[asyncio.Task] = []
        self._recovery_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._stop_event = asyncio.Event()

        await self._requeue_abandoned()

        for queue, count in self._workers.items():
            for n in range(count):
                self._tasks.append(asyncio.create_task(
                    self._worker(queue), name=f"{queue.value}-worker-{n}",
                ))
        self._recovery_task = asyncio.create_task(self._recovery_loop(), name="recovery-sweep")
        self._running = True
        logger.info(
            "Background processor started | workers=%s",
            {q.value: n for q, n in self._workers.items()},
        )

    async def stop(self, timeout: float | None = None) -> None:
        """Stop intake and wait for in-flight jobs. After `timeout` seconds the
        remaining workers are cancelled; their entries are requeued on next start."""
        if not self._running:
            return
        self._stop_event.set()
        tasks = [*self._tasks, self._recovery_task]

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
            logger.warning("Processor stop timed out | cancelled=%d", len(pending))
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                logger.error("Worker ended with error | task=%s error=%s", task.get_name(), task.exception())

        self._tasks.clear()
        self._recovery_task = None
        self._running = False
        logger.info("Background processor stopped | stats=%s", self._stats)

    async def _sleep_unless_stopped(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, queue: QueueName) -> None:
        while not self._stop_event.is_set():
            try:
                got = await self._queue.next(queue, self._cfg.queue_pop_timeout_seconds)
            except TransientIOError as exc:
                logger.error("Queue pop failed | queue=%s error=%s", queue.value, exc)
                await self._sleep_unless_stopped(_OUTAGE_BACKOFF_SECONDS)
                continue
            if got is None:
                continue

            entry, job = got
            self._active[queue] += 1
            try:
                if job is not None:
                    await self.dispatch(job)
                    self._stats["processed"] += 1
            except Exception:
                self._stats["failed"] += 1
                logger.exception("Job handler crashed | queue=%s entry=%s", queue.value, entry.entry_id)
            finally:
                self._active[queue] -= 1
                try:
                    await self._queue.ack(entry)
                except TransientIOError as exc:
                    logger.error("Ack failed | entry=%s error=%s", entry.entry_id, exc)

    async def dispatch(self, job: Job) -> None:
        match job:
            case ExtractionJob():
                await self._run_extraction(job)
            case IndexJob():
                await self._run_index(job)
            case SyncJob():
                await self._run_sync(job)
            case AIJob():
                await self._run_ai(job)
            case _:
                raise TypeError(f"Unknown job kind: {type(job).__name__}")

    async def _run_extraction(self, job: ExtractionJob) -> None:
        record = await self._extraction.claim(job.job_id)
        if record is None:
            # Not pending any more, or the same (file, method) is running elsewhere
            logger.info("Extraction job not claimable, skipped | job=%s", job.job_id)
            return
        try:
            await self._extraction.execute(record)
        except Exception as exc:
            self._stats["failed"] += 1
            await self._extraction.record_failure(record, exc)

    async def _run_index(self, job: IndexJob) -> None:
        try:
            await asyncio.wait_for(
                self._search.handle(job), timeout=self._cfg.index_job_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Indexing timed out | file=%s", job.file_id)
            await self._search.record_failure(job.file_id, "indexing timed out")

    async def _run_sync(self, job: SyncJob) -> None:
        try:
            await asyncio.wait_for(
                self._storage.process_sync_job(job.sync_job_id),
                timeout=self._cfg.sync_job_timeout_seconds,
            )
        except (asyncio.TimeoutError, PipelineError) as exc:
            await self._storage.mark_sync_failed(
                job.sync_job_id, str(exc) or type(exc).__name__, error_code(exc),
            )

    async def _run_ai(self, job: AIJob) -> None:
        if self._ai_handler is None:
            logger.warning("No AI handler configured, AI job dropped | file=%s", job.file_id)
            return
        try:
            await asyncio.wait_for(self._ai_handler(job), timeout=self._cfg.ai_job_timeout_seconds)
        except Exception as exc:
            attempt = job.attempt + 1
            if attempt > self._cfg.job_max_retries:
                logger.error("AI job failed permanently | file=%s error=%s", job.file_id, exc)
                return
            delay = retry_delay_seconds(attempt, self._cfg.retry_base_delay_seconds)
            logger.warning(
                "AI job failed, retrying | file=%s attempt=%d delay=%.1fs error=%s",
                job.file_id, attempt, delay, exc,
            )
            await self._queue.submit(replace(job, attempt=attempt), self._cfg.ai_priority, delay_seconds=delay)

    # ------------------------------------------------------------------
    # Recovery sweep
    # ------------------------------------------------------------------

    def inflight_grace_seconds(self, queue: QueueName) -> float:
        """Age after which an unacked entry cannot belong to a live worker."""
        match queue:
            case QueueName.EXTRACTION:
                longest = max(ESTIMATED_DURATION_MS.values()) / 1000 * self._cfg.job_timeout_factor
                timeout = max(longest, float(self._cfg.min_job_timeout_seconds))
            case QueueName.INDEXING:
                timeout = self._cfg.index_job_timeout_seconds
            case QueueName.STORAGE_SYNC:
                timeout = self._cfg.sync_job_timeout_seconds
            case QueueName.AI_PROCESSING:
                timeout = self._cfg.ai_job_timeout_seconds
        return timeout + _INFLIGHT_MARGIN_SECONDS

    async def _requeue_abandoned(self) -> int:
        total = 0
        for queue in QueueName:
            try:
                requeued = await self._queue.requeue_inflight(
                    queue, older_than_seconds=self.inflight_grace_seconds(queue),
                )
            except TransientIOError as exc:
                logger.error("In-flight requeue failed | queue=%s error=%s", queue.value, exc)
                continue
            if requeued:
                logger.warning("Requeued abandoned entries | queue=%s count=%d", queue.value, requeued)
            total += requeued
        return total

    async def process_pending_database_jobs(self) -> dict:
        batch = self._cfg.recovery_batch_size
        rescheduled = await self._extraction.reschedule_pending(batch)
        stale = await self._extraction.fail_stale(self._cfg.stale_processing_seconds, batch)

        promoted = 0
        for queue in QueueName:
            try:
                promoted += await self._queue.promote_due(queue)
            except TransientIOError as exc:
                logger.error("Delayed promotion failed | queue=%s error=%s", queue.value, exc)

        requeued = await self._requeue_abandoned()

        if rescheduled or stale or promoted or requeued:
            logger.info(
                "Recovery sweep | rescheduled=%d stale=%d promoted=%d requeued=%d",
                rescheduled, stale, promoted, requeued,
            )
        return {
            "rescheduled": rescheduled,
            "stale_failed": stale,
            "promoted": promoted,
            "requeued": requeued,
        }

    async def _recovery_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.process_pending_database_jobs()
            except Exception:
                logger.exception("Recovery sweep failed")
            await self._sleep_unless_stopped(self._cfg.recovery_interval_seconds)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> dict:
        reachable = await self._queue.ping()
        queues: dict[str, dict] = {}
        for queue in QueueName:
            pending = delayed = None
            if reachable:
                try:
                    pending = await self._queue.length(queue)
                    delayed = await self._queue.delayed_length(queue)
                except TransientIOError as exc:
                    logger.warning("Queue length unavailable | queue=%s error=%s", queue.value, exc)
            queues[queue.value] = {
                "pending": pending,
                "delayed": delayed,
                "workers": self._workers[queue],
                "active": self._active[queue],
            }

        dead_workers = sum(1 for task in self._tasks if task.done())
        if not reachable:
            status = "unhealthy"
        elif not self._running or dead_workers:
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "running": self._running,
            "queue_reachable": reachable,
            "dead_workers": dead_workers,
            "queues": queues,
            **self._stats,
        }
