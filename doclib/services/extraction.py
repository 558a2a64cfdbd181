"""
Extraction Service

Everything that happens to one persisted extraction job, independent of
whether it runs inline in the upload request or in a background worker:

  create_job()     pending row from an ExtractionPlan
  schedule()       ExtractionJob onto the `extraction` queue
  claim()          pending -> processing (guarded by the partial unique index)
  execute()        fetch content, extract, persist text, complete, enqueue
                   indexing; all under the job's hard timeout
  record_failure() fail -> retry with backoff, or terminal
  release()        processing -> pending without spending a retry
  reset()          operator reset of a terminal job

Ordering guarantee: the IndexJob is enqueued only after the `completed`
transition and the extracted text are persisted.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from datetime import datetime, timedelta, timezone

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import (
    NotFoundError,
    PermanentExtractionError,
    RetryLimitExceeded,
    TransientIOError,
    error_code,
    is_retryable,
)
from doclib.models.records import ContentRecord, ExtractionJobRecord, FileRecord, JobStatus
from doclib.processing.extractor import TextExtractor
from doclib.processing.strategy import ESTIMATED_DURATION_MS, ExtractionMethod, ExtractionPlan
from doclib.repositories.base import ContentRepository, ExtractionJobRepository, FileRepository
from doclib.storage.hybrid import HybridStorageManager
from doclib.storage.s3 import ObjectRef
from doclib.workers import jobs as transitions
from doclib.workers.jobs import ExtractionJob, IndexJob
from doclib.workers.queue import JobQueue

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExtractionService:

    def __init__(
        self,
        jobs: ExtractionJobRepository,
        contents: ContentRepository,
        files: FileRepository,
        storage: HybridStorageManager,
        extractor: TextExtractor,
        queue: JobQueue,
        cfg: Settings | None = None,
    ) -> None:
        self._jobs = jobs
        self._contents = contents
        self._files = files
        self._storage = storage
        self._extractor = extractor
        self._queue = queue
        self._cfg = cfg or default_settings

    # ------------------------------------------------------------------
    # Creation / scheduling
    # ------------------------------------------------------------------

    async def create_job(self, file: FileRecord, plan: ExtractionPlan) -> ExtractionJobRecord:
        record = ExtractionJobRecord(
            id=uuid.uuid4(),
            file_id=file.id,
            organization_id=file.organization_id,
            method=plan.method,
            priority=plan.priority,
            max_retries=self._cfg.job_max_retries,
            job_metadata={
                "estimated_duration_ms": plan.estimated_duration_ms,
                "use_async": plan.use_async,
            },
        )
        return await self._jobs.add(record)

    async def schedule(self, job: ExtractionJobRecord, *, delay_seconds: float = 0.0) -> bool:
        return await self._queue.submit(
            ExtractionJob(
                job_id=job.id,
                file_id=job.file_id,
                organization_id=job.organization_id,
                method=job.method,
                priority=job.priority,
            ),
            job.priority,
            delay_seconds=delay_seconds,
        )

    async def try_schedule(self, job: ExtractionJobRecord, *, delay_seconds: float = 0.0) -> bool:
        """schedule(), but a queue outage is logged instead of raised."""
        try:
            return await self.schedule(job, delay_seconds=delay_seconds)
        except TransientIOError as exc:
            logger.error(
                "Extraction enqueue failed, recovery sweep will reschedule | job=%s error=%s",
                job.id, exc,
            )
            return False

    def timeout_for(self, job: ExtractionJobRecord) -> float:
        """Hard timeout: estimated duration x factor, never below the floor."""
        estimate_ms = job.job_metadata.get(
            "estimated_duration_ms", ESTIMATED_DURATION_MS[ExtractionMethod(job.method)]
        )
        return max(
            estimate_ms / 1000 * self._cfg.job_timeout_factor,
            float(self._cfg.min_job_timeout_seconds),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def get(self, job_id: uuid.UUID) -> ExtractionJobRecord | None:
        return await self._jobs.get(job_id)

    async def claim(self, job_id: uuid.UUID) -> ExtractionJobRecord | None:
        return await self._jobs.claim(job_id, _utcnow())

    async def execute(self, job: ExtractionJobRecord) -> ExtractionJobRecord:
        return await asyncio.wait_for(self._execute(job), timeout=self.timeout_for(job))

    async def _execute(self, job: ExtractionJobRecord) -> ExtractionJobRecord:
        file = await self._files.get(job.file_id)
        if file is None or not file.is_live:
            done = transitions.complete(job, _utcnow(), {"skipped": "file_deleted"})
            await self._jobs.save(done)
            logger.info("Extraction skipped, file deleted | job=%s file=%s", job.id, job.file_id)
            return done

        source = await self._source_for(job, file)
        output = await self._extractor.extract_text(
            source, file.mime_type, job.method, size_hint=file.size_bytes,
        )
        if not output.success:
            raise PermanentExtractionError(output.metadata.get("error", "extraction failed"))

        text = output.text
        await self._contents.upsert(ContentRecord(
            file_id=file.id,
            organization_id=file.organization_id,
            full_text=text,
            word_count=len(text.split()),
            character_count=len(text),
            text_hash=hashlib.sha256(text.encode("utf-8")).hexdigest(),
            extraction_method=job.method,
            confidence_score=output.confidence,
            page_count=output.page_count,
            extraction_metadata=output.metadata,
        ))

        done = transitions.complete(job, _utcnow(), {
            "character_count": len(text),
            "extractor": output.metadata.get("extractor"),
        })
        await self._jobs.save(done)
        logger.info(
            "Extraction completed | job=%s file=%s method=%s chars=%d",
            job.id, file.id, job.method.value, len(text),
        )

        await self._schedule_indexing(done)
        return done

    async def _source_for(self, job: ExtractionJobRecord, file: FileRecord) -> bytes | ObjectRef:
        if job.method == ExtractionMethod.ASYNC_OCR:
            ref = await self._storage.object_reference(file.id)
            if ref is not None:
                return ref
        return await self._storage.retrieve_file(file.id)

    async def _schedule_indexing(self, job: ExtractionJobRecord) -> None:
        try:
            await self._queue.submit(
                IndexJob(file_id=job.file_id, organization_id=job.organization_id),
                self._cfg.index_priority_after_extraction,
            )
        except TransientIOError as exc:
            # Text is persisted; an organization reindex picks the file up
            logger.error("Index enqueue failed | file=%s error=%s", job.file_id, exc)

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def record_failure(
        self,
        job: ExtractionJobRecord,
        exc: BaseException,
    ) -> ExtractionJobRecord:
        """
        Persist one failed attempt. Retryable failures go back to pending and
        are re-enqueued after an exponential backoff while the budget lasts;
        everything else stays `failed`.
        """
        message = str(exc) or type(exc).__name__
        failed = transitions.fail(job, message, error_code(exc), _utcnow())

        if not is_retryable(exc):
            await self._jobs.save(failed)
            logger.error(
                "Extraction failed permanently | job=%s code=%s error=%s",
                job.id, failed.error_code, message,
            )
            return failed

        try:
            pending = transitions.retry(failed)
        except RetryLimitExceeded as limit:
            await self._jobs.save(failed)
            logger.error("Extraction retries exhausted | job=%s detail=%s", job.id, limit)
            return failed

        await self._jobs.save(pending)
        delay = transitions.retry_delay_seconds(pending.retry_count, self._cfg.retry_base_delay_seconds)
        logger.warning(
            "Extraction failed, retrying | job=%s attempt=%d/%d delay=%.1fs error=%s",
            job.id, pending.retry_count, pending.max_retries, delay, message,
        )
        await self.try_schedule(pending, delay_seconds=delay)
        return pending

    async def release(self, job: ExtractionJobRecord) -> ExtractionJobRecord:
        """Hand a claimed job back to the background queue (inline fallback)."""
        released = transitions.release(job)
        await self._jobs.save(released)
        await self.try_schedule(released)
        return released

    async def reset(self, job_id: uuid.UUID) -> ExtractionJobRecord:
        job = await self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Extraction job {job_id} not found")
        fresh = transitions.reset(job)
        await self._jobs.save(fresh)
        await self.try_schedule(fresh)
        logger.info("Extraction job reset | job=%s", job_id)
        return fresh

    # ------------------------------------------------------------------
    # Recovery sweep support
    # ------------------------------------------------------------------

    async def reschedule_pending(self, limit: int) -> int:
        scheduled = 0
        for job in await self._jobs.list_pending(limit):
            if await self.try_schedule(job):
                scheduled += 1
        return scheduled

    async def fail_stale(self, stale_after_seconds: int, limit: int) -> int:
        """Processing jobs whose worker vanished count as a failed attempt."""
        cutoff = _utcnow() - timedelta(seconds=stale_after_seconds)
        stale = await self._jobs.list_stale_processing(cutoff, limit)
        for job in stale:
            if job.status != JobStatus.PROCESSING:
                continue
            await self.record_failure(
                job,
                TransientIOError("Processing stalled, worker presumed dead", code="STALLED"),
            )
        return len(stale)
