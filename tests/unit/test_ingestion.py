"""
Unit Tests — IngestionService (upload pipeline)
═══════════════════════════════════════════════
Tests for doclib/services/ingestion.py

Coverage:
  ✅ Small text file extracted inline → completed, text stored, IndexJob queued
  ✅ Inline failure → job handed to the background queue, no retry spent
  ✅ Large / async-class file → pending job on the extraction queue
  ✅ Deferred backup → file sync scheduled, reported on the outcome
  ✅ Queue outage never fails an upload; recovery sweep picks the job up
  ✅ request_ai → AIJob queued
  ✅ Policy violations propagate; nothing persisted
  ✅ delete / download_url are tenant-scoped
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from doclib.core.errors import NotFoundError, PolicyViolationError, TransientIOError
from doclib.models.records import IndexState, JobStatus, StorageBackend, StorageType
from doclib.processing.extractor import TextExtractor
from doclib.processing.strategy import ExtractionMethod
from doclib.services.extraction import ExtractionService
from doclib.services.ingestion import IngestionService
from doclib.workers.jobs import QueueName


@pytest.fixture
def object_store_org(set_policy, org_id):
    set_policy(org_id, StorageType.OBJECT_STORE)
    return org_id


@pytest.mark.unit
class TestInlineExtraction:

    async def test_small_text_completed_inline(self, ingestion, repos, queue_store, object_store_org,
                                               sample_txt_bytes):
        outcome = await ingestion.upload(object_store_org, sample_txt_bytes, "report.txt", "text/plain")

        assert outcome.processed_inline is True
        assert outcome.extraction_status == JobStatus.COMPLETED
        assert outcome.plan.method == ExtractionMethod.DIRECT_TEXT
        content = await repos.contents.get(outcome.file_id)
        assert content.full_text == sample_txt_bytes.decode()
        assert await queue_store.length(QueueName.INDEXING.value) == 1
        assert await queue_store.length(QueueName.EXTRACTION.value) == 0

    async def test_index_status_starts_not_indexed(self, ingestion, repos, object_store_org,
                                                   sample_txt_bytes):
        outcome = await ingestion.upload(object_store_org, sample_txt_bytes, "report.txt", "text/plain")
        assert (await repos.statuses.get(outcome.file_id)).status == IndexState.NOT_INDEXED

    async def test_inline_failure_falls_back_to_background(self, storage, search, queue, repos,
                                                           queue_store, test_settings,
                                                           object_store_org, sample_txt_bytes):
        extractor = MagicMock(spec=TextExtractor)
        extractor.extract_text = AsyncMock(side_effect=TransientIOError("decoder pool exhausted"))
        extraction = ExtractionService(
            repos.jobs, repos.contents, repos.files, storage, extractor, queue, test_settings,
        )
        service = IngestionService(storage, extraction, search, queue, test_settings)

        outcome = await service.upload(object_store_org, sample_txt_bytes, "report.txt", "text/plain")

        assert outcome.extraction_status == JobStatus.PENDING
        job = await repos.jobs.get(outcome.job_id)
        assert job.retry_count == 0
        assert job.started_at is None
        assert await queue_store.length(QueueName.EXTRACTION.value) == 1

    async def test_force_sync_runs_inline_despite_size(self, storage, extraction, search, queue,
                                                       test_settings, object_store_org, sample_txt_bytes):
        cfg = test_settings.model_copy(update={"inline_extraction_max_bytes": 0})
        service = IngestionService(storage, extraction, search, queue, cfg)
        outcome = await service.upload(
            object_store_org, sample_txt_bytes, "report.txt", "text/plain", force_sync=True,
        )
        assert outcome.processed_inline is True
        assert outcome.extraction_status == JobStatus.COMPLETED


@pytest.mark.unit
class TestBackgroundScheduling:

    @pytest.fixture
    def background_only(self, storage, extraction, search, queue, test_settings):
        cfg = test_settings.model_copy(update={"inline_extraction_max_bytes": 0})
        return IngestionService(storage, extraction, search, queue, cfg)

    async def test_enqueued_at_plan_priority(self, background_only, queue_store, object_store_org,
                                             sample_txt_bytes):
        outcome = await background_only.upload(
            object_store_org, sample_txt_bytes, "urgent-report.txt", "text/plain",
        )

        assert outcome.processed_inline is False
        assert outcome.extraction_status == JobStatus.PENDING
        (entry,) = queue_store.ready[QueueName.EXTRACTION.value].values()
        assert entry[1]["priority"] == outcome.plan.priority == 5

    async def test_queue_outage_does_not_fail_upload(self, background_only, processor, repos,
                                                     queue_store, object_store_org, sample_txt_bytes):
        queue_store.down = True
        outcome = await background_only.upload(object_store_org, sample_txt_bytes, "a.txt", "text/plain")

        assert outcome.extraction_status == JobStatus.PENDING
        assert (await repos.jobs.get(outcome.job_id)).status == JobStatus.PENDING

        queue_store.down = False
        swept = await processor.process_pending_database_jobs()
        assert swept["rescheduled"] == 1
        assert await queue_store.length(QueueName.EXTRACTION.value) == 1


@pytest.mark.unit
class TestUploadSideEffects:

    async def test_deferred_backup_schedules_sync(self, ingestion, providers, queue_store, set_policy,
                                                  org_id, sample_txt_bytes):
        set_policy(org_id, StorageType.HYBRID)
        providers[StorageBackend.LOCAL].fail_writes = TransientIOError("volume offline")

        outcome = await ingestion.upload(org_id, sample_txt_bytes, "a.txt", "text/plain")

        assert outcome.backup_deferred is True
        assert outcome.sync_job_id is not None
        assert await queue_store.length(QueueName.STORAGE_SYNC.value) == 1

    async def test_hybrid_upload_with_both_copies(self, ingestion, repos, set_policy, org_id,
                                                  sample_txt_bytes):
        set_policy(org_id, StorageType.HYBRID)
        outcome = await ingestion.upload(org_id, sample_txt_bytes, "a.txt", "text/plain")
        assert outcome.backup_deferred is False
        assert outcome.sync_job_id is None
        assert len(await repos.locations.list_for_file(outcome.file_id)) == 2

    async def test_request_ai_queues_job(self, ingestion, queue_store, object_store_org, sample_txt_bytes):
        await ingestion.upload(object_store_org, sample_txt_bytes, "a.txt", "text/plain", request_ai=True)
        assert await queue_store.length(QueueName.AI_PROCESSING.value) == 1

    async def test_metadata_fields_persisted(self, ingestion, repos, object_store_org, sample_txt_bytes):
        folder = uuid.uuid4()
        outcome = await ingestion.upload(
            object_store_org, sample_txt_bytes, "a.txt", "text/plain",
            folder_id=folder, title="Q3 Report", tags=["finance"], metadata={"source": "scanner"},
        )
        file = await repos.files.get(outcome.file_id)
        assert file.folder_id == folder
        assert file.title == "Q3 Report"
        assert file.tags == ["finance"]
        assert file.file_metadata == {"source": "scanner"}

    async def test_policy_violation_propagates(self, ingestion, repos, set_policy, org_id):
        set_policy(org_id, StorageType.OBJECT_STORE, allowed_mime_types=["application/pdf"])
        with pytest.raises(PolicyViolationError) as exc:
            await ingestion.upload(org_id, b"hello", "a.txt", "text/plain")
        assert exc.value.code == "MIME_NOT_ALLOWED"
        assert repos.files.files == {}
        assert repos.jobs.jobs == {}


@pytest.mark.unit
class TestTenantScoping:

    async def test_foreign_org_cannot_delete(self, ingestion, object_store_org, other_org_id,
                                             sample_txt_bytes):
        outcome = await ingestion.upload(object_store_org, sample_txt_bytes, "a.txt", "text/plain")
        with pytest.raises(NotFoundError):
            await ingestion.delete(other_org_id, outcome.file_id)

    async def test_foreign_org_cannot_download(self, ingestion, object_store_org, other_org_id,
                                               sample_txt_bytes):
        outcome = await ingestion.upload(object_store_org, sample_txt_bytes, "a.txt", "text/plain")
        with pytest.raises(NotFoundError):
            await ingestion.download_url(other_org_id, outcome.file_id)

    async def test_delete_removes_from_index(self, ingestion, search, repos, search_backend,
                                             object_store_org, sample_txt_bytes):
        outcome = await ingestion.upload(object_store_org, sample_txt_bytes, "a.txt", "text/plain")
        await search.index_file(outcome.file_id)

        await ingestion.delete(object_store_org, outcome.file_id)

        assert str(outcome.file_id) not in search_backend.documents
        assert not (await repos.files.get(outcome.file_id)).is_live
        with pytest.raises(NotFoundError):
            await ingestion.download_url(object_store_org, outcome.file_id)

    async def test_download_url_presigned(self, ingestion, object_store_org, sample_txt_bytes):
        outcome = await ingestion.upload(object_store_org, sample_txt_bytes, "a.txt", "text/plain")
        url = await ingestion.download_url(object_store_org, outcome.file_id, ttl_seconds=120)
        assert url.startswith("https://files.test/object_store/")
        assert url.endswith("?ttl=120")
