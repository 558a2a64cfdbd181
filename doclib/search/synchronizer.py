"""
Search Index Synchronizer

Projects file metadata + extracted text into the search engine and tracks
per-file index status (library.search_index_status):

    not_indexed ──▶ indexing ──▶ indexed
                       │
                       └──────▶ index_failed ──retry_failed()──▶ (queue)

Documents are keyed by file id, so every operation here is an idempotent
upsert or delete. The synchronizer is the only writer of index status, and
it never raises engine failures to its callers: they end up in the status
row instead.

A cached health check (search_health_cache_seconds) gates single-file
indexing. While the engine reports unhealthy, index_file() records
`index_failed` without calling the engine and retry_failed() brings the file
back once the periodic retry runs.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import IndexUnavailableError, PipelineError
from doclib.models.records import ContentRecord, FileRecord, IndexState, IndexStatusRecord
from doclib.repositories.base import ContentRepository, FileRepository, IndexStatusRepository
from doclib.search.base import SearchBackend
from doclib.workers.jobs import IndexJob
from doclib.workers.queue import JobQueue

logger = logging.getLogger(__name__)

UNAVAILABLE_ERROR = "search engine unavailable"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def parse_tags(raw) -> list[str]:
    """Tags as stored by various clients: list, JSON array string or 'a, b, c'."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(tag).strip() for tag in raw if str(tag).strip()]
    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return parse_tags(parsed)
        return [tag.strip() for tag in text.split(",") if tag.strip()]
    return [str(raw)]


def build_document(file: FileRecord, content: ContentRecord | None) -> dict:
    return {
        "file_id":           str(file.id),
        "organization_id":   str(file.organization_id),
        "title":             file.title or file.original_name,
        "original_name":     file.original_name,
        "content":           content.full_text if content else "",
        "tags":              parse_tags(file.tags),
        "department":        file.department,
        "author":            file.author,
        "visibility":        file.visibility.value,
        "folder_id":         str(file.folder_id) if file.folder_id else None,
        "file_type":         file.file_type,
        "mime_type":         file.mime_type,
        "size_bytes":        file.size_bytes,
        "word_count":        content.word_count if content else 0,
        "extraction_method": content.extraction_method.value if content else None,
        "created_at":        _iso(file.created_at),
        "updated_at":        _iso(file.updated_at),
    }


class SearchIndexSynchronizer:

    def __init__(
        self,
        backend: SearchBackend,
        files: FileRepository,
        contents: ContentRepository,
        statuses: IndexStatusRepository,
        queue: JobQueue,
        cfg: Settings | None = None,
    ) -> None:
        self._backend = backend
        self._files = files
        self._contents = contents
        self._statuses = statuses
        self._queue = queue
        self._cfg = cfg or default_settings
        self._health: tuple[float, dict] | None = None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def health_check(self) -> dict:
        raw = await self._backend.health()
        cluster = raw.get("cluster_status")
        if not raw.get("reachable") or cluster == "red":
            status = "unhealthy"
        elif cluster == "green" and raw.get("index_exists"):
            status = "healthy"
        else:
            status = "degraded"
        result = {"status": status, **raw}
        self._health = (time.monotonic(), result)
        return result

    async def _cached_health(self) -> dict:
        if self._health is not None:
            checked_at, result = self._health
            if time.monotonic() - checked_at < self._cfg.search_health_cache_seconds:
                return result
        return await self.health_check()

    def _invalidate_health(self) -> None:
        self._health = None

    # ------------------------------------------------------------------
    # Single file
    # ------------------------------------------------------------------

    async def _status_for(self, file: FileRecord) -> IndexStatusRecord:
        current = await self._statuses.get(file.id)
        return current or IndexStatusRecord(file_id=file.id, organization_id=file.organization_id)

    async def get_status(self, file_id: uuid.UUID) -> IndexStatusRecord | None:
        """Index status of a file; a file never indexed reports not_indexed."""
        current = await self._statuses.get(file_id)
        if current is not None:
            return current
        file = await self._files.get(file_id)
        if file is None:
            return None
        return IndexStatusRecord(file_id=file.id, organization_id=file.organization_id)

    async def mark_not_indexed(self, file: FileRecord) -> IndexStatusRecord:
        record = replace(await self._status_for(file), status=IndexState.NOT_INDEXED, last_error=None)
        await self._statuses.save(record)
        return record

    async def index_file(self, file_id: uuid.UUID) -> IndexStatusRecord | None:
        file = await self._files.get(file_id)
        if file is None or not file.is_live:
            return await self.remove_from_index(file_id)

        current = await self._status_for(file)

        health = await self._cached_health()
        if health["status"] == "unhealthy":
            deferred = replace(current, status=IndexState.INDEX_FAILED, last_error=UNAVAILABLE_ERROR)
            await self._statuses.save(deferred)
            logger.warning("Indexing deferred, search unhealthy | file=%s", file_id)
            return deferred

        await self._statuses.save(replace(current, status=IndexState.INDEXING))
        # Any failure past this point must move the row off `indexing`
        try:
            content = await self._contents.get(file_id)
            await self._backend.upsert(str(file_id), build_document(file, content))
        except Exception as exc:
            if isinstance(exc, IndexUnavailableError):
                self._invalidate_health()
            elif not isinstance(exc, PipelineError):
                logger.exception("Unexpected indexing error | file=%s", file_id)
            failed = replace(
                current,
                status=IndexState.INDEX_FAILED,
                retry_count=current.retry_count + 1,
                last_error=str(exc)[:1000],
            )
            await self._statuses.save(failed)
            logger.error(
                "Indexing failed | file=%s attempt=%d error=%s",
                file_id, failed.retry_count, exc,
            )
            return failed

        indexed = replace(
            current,
            status=IndexState.INDEXED,
            retry_count=0,
            last_error=None,
            last_indexed_at=_utcnow(),
        )
        await self._statuses.save(indexed)
        logger.info("Indexed | file=%s org=%s has_content=%s", file_id, file.organization_id, content is not None)
        return indexed

    async def remove_from_index(self, file_id: uuid.UUID) -> IndexStatusRecord | None:
        try:
            await self._backend.delete(str(file_id))
        except PipelineError as exc:
            logger.error("Index removal failed | file=%s error=%s", file_id, exc)
            current = await self._statuses.get(file_id)
            if current is None:
                return None
            failed = replace(current, status=IndexState.INDEX_FAILED, last_error=str(exc)[:1000])
            await self._statuses.save(failed)
            return failed

        current = await self._statuses.get(file_id)
        if current is None:
            file = await self._files.get(file_id)
            if file is None:
                return None
            current = IndexStatusRecord(file_id=file_id, organization_id=file.organization_id)
        removed = replace(current, status=IndexState.NOT_INDEXED, last_error=None)
        await self._statuses.save(removed)
        logger.info("Removed from index | file=%s", file_id)
        return removed

    async def handle(self, job: IndexJob) -> IndexStatusRecord | None:
        return await self.index_file(job.file_id)

    async def record_failure(self, file_id: uuid.UUID, error: str) -> None:
        """An indexing run that never reported back (e.g. hit its timeout)."""
        current = await self._statuses.get(file_id)
        if current is None:
            return
        await self._statuses.save(replace(
            current,
            status=IndexState.INDEX_FAILED,
            retry_count=current.retry_count + 1,
            last_error=error[:1000],
        ))

    # ------------------------------------------------------------------
    # Organization-wide
    # ------------------------------------------------------------------

    async def bulk_index(self, organization_id: uuid.UUID, batch_size: int | None = None) -> dict:
        """
        Keyset-paginated bulk indexing of every live file. Statuses are
        written per file, so a run interrupted by an outage can simply be
        started again.
        """
        batch_size = batch_size or self._cfg.search_bulk_batch_size
        summary = {"indexed": 0, "failed": 0, "batches": 0, "aborted": False}

        after_id: uuid.UUID | None = None
        while True:
            page = await self._files.list_active(organization_id, after_id=after_id, limit=batch_size)
            if not page:
                break

            documents: dict[str, dict] = {}
            by_id: dict[str, FileRecord] = {}
            for file in page:
                documents[str(file.id)] = build_document(file, await self._contents.get(file.id))
                by_id[str(file.id)] = file

            try:
                result = await self._backend.bulk_upsert(documents)
            except IndexUnavailableError as exc:
                self._invalidate_health()
                await self._fail_page(page, str(exc))
                summary["failed"] += len(page)
                summary["aborted"] = True
                logger.error("Bulk indexing aborted | org=%s error=%s", organization_id, exc)
                break
            except PipelineError as exc:
                # Whole batch rejected: fail its files and carry on with the next page
                await self._fail_page(page, str(exc))
                summary["failed"] += len(page)
                summary["batches"] += 1
                logger.error(
                    "Bulk batch rejected | org=%s size=%d error=%s",
                    organization_id, len(page), exc,
                )
                if len(page) < batch_size:
                    break
                after_id = page[-1].id
                continue

            now = _utcnow()
            for doc_id in result.indexed:
                current = await self._status_for(by_id[doc_id])
                await self._statuses.save(replace(
                    current, status=IndexState.INDEXED, retry_count=0,
                    last_error=None, last_indexed_at=now,
                ))
            for doc_id, error in result.failed.items():
                current = await self._status_for(by_id[doc_id])
                await self._statuses.save(replace(
                    current, status=IndexState.INDEX_FAILED,
                    retry_count=current.retry_count + 1, last_error=error[:1000],
                ))

            summary["indexed"] += len(result.indexed)
            summary["failed"] += len(result.failed)
            summary["batches"] += 1
            if len(page) < batch_size:
                break
            after_id = page[-1].id

        logger.info(
            "Bulk indexing finished | org=%s indexed=%d failed=%d batches=%d aborted=%s",
            organization_id, summary["indexed"], summary["failed"],
            summary["batches"], summary["aborted"],
        )
        return summary

    async def _fail_page(self, page: list[FileRecord], error: str) -> None:
        for file in page:
            current = await self._status_for(file)
            await self._statuses.save(replace(
                current,
                status=IndexState.INDEX_FAILED,
                retry_count=current.retry_count + 1,
                last_error=error[:1000],
            ))

    async def reindex_organization(self, organization_id: uuid.UUID) -> dict:
        logger.info("Reindex requested | org=%s", organization_id)
        return await self.bulk_index(organization_id)

    async def retry_failed(self, limit: int = 100) -> int:
        """Re-enqueue index_failed files still under the retry bound."""
        rows = await self._statuses.list_failed(self._cfg.index_max_retries, limit)
        for row in rows:
            await self._queue.submit(
                IndexJob(file_id=row.file_id, organization_id=row.organization_id, reason="retry"),
                self._cfg.index_retry_priority,
            )
        if rows:
            logger.info("Index retries scheduled | count=%d", len(rows))
        return len(rows)
