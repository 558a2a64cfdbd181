"""
Ingestion Service

Upload pipeline seen from the file routes:

  1. HybridStorageManager.store_file(): policy checks, primary write (fatal on
     failure), best-effort backup. A deferred backup schedules its `file` sync.
  2. classify() the file and persist a pending extraction job; index status
     starts at not_indexed.
  3. Small synchronous-class files are extracted inline, inside the request,
     under the job's hard timeout. Any failure hands the job back to the
     background queue untouched (no retry spent, no immediate second try).
  4. Everything else is enqueued at the plan's priority. A queue outage is
     only logged: the job row is pending and the recovery sweep finds it.
  5. Optionally an AIJob for summary / tag generation.

Upload success depends only on step 1. Extraction and indexing outcomes are
reported, never raised.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import NotFoundError, TransientIOError
from doclib.models.records import ExtractionJobRecord, FileRecord, JobStatus, Visibility
from doclib.processing.strategy import ExtractionPlan, FileCharacteristics, classify
from doclib.search.synchronizer import SearchIndexSynchronizer
from doclib.services.extraction import ExtractionService
from doclib.storage.hybrid import HybridStorageManager
from doclib.workers.jobs import AIJob
from doclib.workers.queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadOutcome:
    file_id:           uuid.UUID
    job_id:            uuid.UUID
    extraction_status: JobStatus
    plan:              ExtractionPlan
    processed_inline:  bool
    backup_deferred:   bool
    sync_job_id:       uuid.UUID | None = None


class IngestionService:

    def __init__(
        self,
        storage: HybridStorageManager,
        extraction: ExtractionService,
        search: SearchIndexSynchronizer,
        queue: JobQueue,
        cfg: Settings | None = None,
    ) -> None:
        self._storage = storage
        self._extraction = extraction
        self._search = search
        self._queue = queue
        self._cfg = cfg or default_settings

    async def upload(
        self,
        organization_id: uuid.UUID,
        data: bytes,
        name: str,
        mime_type: str,
        *,
        folder_id: uuid.UUID | None = None,
        metadata: dict | None = None,
        title: str | None = None,
        author: str | None = None,
        department: str | None = None,
        tags: list[str] | None = None,
        visibility: Visibility = Visibility.PRIVATE,
        force_sync: bool = False,
        request_ai: bool = False,
    ) -> UploadOutcome:
        result = await self._storage.store_file(
            organization_id, data, name, mime_type, folder_id, metadata,
            title=title, author=author, department=department,
            tags=tags, visibility=visibility,
        )
        file = result.file

        sync_job_id: uuid.UUID | None = None
        if result.backup_deferred:
            try:
                sync_job_id = await self._storage.schedule_deferred_backup(result)
            except TransientIOError as exc:
                # needs_backup stays set; the periodic backup sweep retries
                logger.error("Deferred backup not scheduled | file=%s error=%s", file.id, exc)

        plan = classify(FileCharacteristics(
            mime_type=mime_type, size_bytes=file.size_bytes, name=name,
        ))
        job = await self._extraction.create_job(file, plan)
        await self._search.mark_not_indexed(file)

        inline = force_sync or (
            not plan.use_async and file.size_bytes <= self._cfg.inline_extraction_max_bytes
        )
        if inline:
            status = await self._extract_inline(job)
        else:
            await self._extraction.try_schedule(job)
            status = job.status

        if request_ai:
            await self._request_ai(file)

        logger.info(
            "Upload accepted | org=%s file=%s method=%s priority=%d inline=%s status=%s",
            organization_id, file.id, plan.method.value, plan.priority, inline, status.value,
        )
        return UploadOutcome(
            file_id=file.id,
            job_id=job.id,
            extraction_status=status,
            plan=plan,
            processed_inline=inline,
            backup_deferred=result.backup_deferred,
            sync_job_id=sync_job_id,
        )

    async def _extract_inline(self, job: ExtractionJobRecord) -> JobStatus:
        claimed = await self._extraction.claim(job.id)
        if claimed is None:
            await self._extraction.try_schedule(job)
            return job.status
        try:
            done = await self._extraction.execute(claimed)
        except Exception as exc:
            logger.warning(
                "Inline extraction failed, falling back to background | job=%s error=%s",
                job.id, exc,
            )
            released = await self._extraction.release(claimed)
            return released.status
        return done.status

    async def _request_ai(self, file: FileRecord) -> None:
        try:
            await self._queue.submit(
                AIJob(file_id=file.id, organization_id=file.organization_id),
                self._cfg.ai_priority,
            )
        except TransientIOError as exc:
            logger.error("AI job not enqueued | file=%s error=%s", file.id, exc)

    async def _owned_file(self, organization_id: uuid.UUID, file_id: uuid.UUID) -> FileRecord:
        file = await self._storage.get_file(file_id)
        if file is None or file.organization_id != organization_id:
            raise NotFoundError(f"File {file_id} not found")
        return file

    async def delete(self, organization_id: uuid.UUID, file_id: uuid.UUID) -> FileRecord:
        await self._owned_file(organization_id, file_id)
        deleted = await self._storage.delete_file(file_id)
        await self._search.remove_from_index(file_id)
        logger.info("File deleted | org=%s file=%s", organization_id, file_id)
        return deleted

    async def download_url(
        self,
        organization_id: uuid.UUID,
        file_id: uuid.UUID,
        ttl_seconds: int = 900,
    ) -> str:
        file = await self._owned_file(organization_id, file_id)
        if not file.is_live:
            raise NotFoundError(f"File {file_id} not found")
        return await self._storage.presign(file_id, ttl_seconds)
