"""
Unit Tests — ExtractionService
═══════════════════════════════
Tests for doclib/services/extraction.py

Coverage:
  ✅ create_job persists plan fields + retry bound
  ✅ execute: text persisted, job completed, THEN IndexJob enqueued
  ✅ Deleted file → job completed as skipped, nothing indexed
  ✅ Permanent failure (unparseable content) → failed, no retry
  ✅ Transient failure → pending again with backoff, until the bound
  ✅ Hard timeout counts as a failed attempt
  ✅ At most one processing job per (file, method)
  ✅ Recovery support: reschedule_pending, fail_stale, reset
"""

from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from doclib.core.errors import PermanentExtractionError, TransientIOError
from doclib.models.records import JobStatus, StorageType
from doclib.processing.extractor import ExtractionOutput, TextExtractor
from doclib.processing.strategy import ExtractionMethod, FileCharacteristics, classify
from doclib.services.extraction import ExtractionService
from doclib.workers.jobs import QueueName, decode_job
from tests.fakes import stale


TEXT = b"Board minutes: budget approved for the new warehouse."


@pytest.fixture
def make_service(repos, storage, queue, test_settings):
    """Factory: ExtractionService with a mocked extractor and optional config overrides."""
    def _build(extract_text=None, **cfg_overrides):
        extractor = MagicMock(spec=TextExtractor)
        extractor.extract_text = extract_text or AsyncMock(
            return_value=ExtractionOutput(text="extracted", metadata={"extractor": "mock"}),
        )
        return ExtractionService(
            jobs=repos.jobs,
            contents=repos.contents,
            files=repos.files,
            storage=storage,
            extractor=extractor,
            queue=queue,
            cfg=test_settings.model_copy(update=cfg_overrides),
        )
    return _build


@pytest.fixture
async def stored_job(storage, extraction, set_policy, org_id):
    """A stored text file plus its pending extraction job."""
    set_policy(org_id, StorageType.OBJECT_STORE)
    result = await storage.store_file(org_id, TEXT, "minutes.txt", "text/plain")
    plan = classify(FileCharacteristics("text/plain", len(TEXT), "minutes.txt"))
    job = await extraction.create_job(result.file, plan)
    return result.file, job


@pytest.mark.unit
class TestCreateAndExecute:

    async def test_create_job(self, stored_job, test_settings):
        _, job = stored_job
        assert job.status == JobStatus.PENDING
        assert job.method == ExtractionMethod.DIRECT_TEXT
        assert job.priority == 3
        assert job.max_retries == test_settings.job_max_retries
        assert job.job_metadata == {"estimated_duration_ms": 1_000, "use_async": False}

    async def test_execute_persists_then_enqueues_indexing(self, extraction, repos, queue_store,
                                                           stored_job):
        file, job = stored_job
        claimed = await extraction.claim(job.id)
        done = await extraction.execute(claimed)

        assert done.status == JobStatus.COMPLETED
        content = await repos.contents.get(file.id)
        assert content.full_text == TEXT.decode()
        assert content.word_count == len(TEXT.split())
        assert content.extraction_method == ExtractionMethod.DIRECT_TEXT

        (envelope,) = queue_store.envelopes(QueueName.INDEXING.value)
        index_job = decode_job(envelope)
        assert index_job.file_id == file.id

    async def test_deleted_file_skipped(self, extraction, storage, repos, queue_store, stored_job):
        file, job = stored_job
        await storage.delete_file(file.id)

        done = await extraction.execute(await extraction.claim(job.id))

        assert done.status == JobStatus.COMPLETED
        assert done.job_metadata["skipped"] == "file_deleted"
        assert await repos.contents.get(file.id) is None
        assert queue_store.envelopes(QueueName.INDEXING.value) == []

    async def test_schedule_uses_job_priority(self, extraction, queue, stored_job):
        _, job = stored_job
        await extraction.schedule(job)
        entry, queued = await queue.next(QueueName.EXTRACTION, 0.0)
        assert entry.priority == job.priority
        assert queued.job_id == job.id

    async def test_timeout_derived_from_estimate(self, extraction, stored_job, test_settings):
        _, job = stored_job
        assert extraction.timeout_for(job) == max(1.0 * test_settings.job_timeout_factor, 5.0)
        tiny = replace(job, job_metadata={"estimated_duration_ms": 10})
        assert extraction.timeout_for(tiny) == test_settings.min_job_timeout_seconds


@pytest.mark.unit
class TestFailures:

    async def test_unparseable_content_is_terminal(self, make_service, repos, stored_job):
        svc = make_service(AsyncMock(return_value=ExtractionOutput(
            text="", metadata={"error": "binary content is not text"}, success=False,
        )))
        _, job = stored_job
        claimed = await svc.claim(job.id)
        with pytest.raises(PermanentExtractionError) as exc:
            await svc.execute(claimed)

        failed = await svc.record_failure(claimed, exc.value)
        assert failed.status == JobStatus.FAILED
        assert failed.retry_count == 1
        assert failed.error_code == "EXTRACTION_FAILED"
        assert (await repos.jobs.get(job.id)).status == JobStatus.FAILED

    async def test_transient_failure_retried_until_bound(self, make_service, repos, queue_store,
                                                        stored_job):
        svc = make_service(AsyncMock(side_effect=TransientIOError("textract throttled")))
        _, job = stored_job

        for attempt in (1, 2):
            claimed = await svc.claim(job.id)
            with pytest.raises(TransientIOError) as exc:
                await svc.execute(claimed)
            pending = await svc.record_failure(claimed, exc.value)
            assert pending.status == JobStatus.PENDING
            assert pending.retry_count == attempt
            assert await queue_store.delayed_length(QueueName.EXTRACTION.value) == 1
            await queue_store.promote_due(QueueName.EXTRACTION.value, now=float("inf"))

        claimed = await svc.claim(job.id)
        with pytest.raises(TransientIOError) as exc:
            await svc.execute(claimed)
        final = await svc.record_failure(claimed, exc.value)

        assert final.status == JobStatus.FAILED
        assert final.retry_count == final.max_retries == 3
        assert await svc.claim(job.id) is None

    async def test_timeout_is_failed_attempt(self, make_service, stored_job):
        async def _hang(*args, **kwargs):
            await asyncio.sleep(5)

        svc = make_service(AsyncMock(side_effect=_hang), min_job_timeout_seconds=0.05, job_timeout_factor=0.0)
        _, job = stored_job
        claimed = await svc.claim(job.id)
        with pytest.raises(asyncio.TimeoutError) as exc:
            await svc.execute(claimed)

        pending = await svc.record_failure(claimed, exc.value)
        assert pending.status == JobStatus.PENDING
        assert pending.error_code == "TIMEOUT"
        assert pending.retry_count == 1

    async def test_release_spends_no_retry(self, extraction, queue_store, stored_job):
        _, job = stored_job
        released = await extraction.release(await extraction.claim(job.id))
        assert released.status == JobStatus.PENDING
        assert released.retry_count == 0
        assert await queue_store.length(QueueName.EXTRACTION.value) == 1


@pytest.mark.unit
class TestClaiming:

    async def test_claim_once(self, extraction, stored_job):
        _, job = stored_job
        assert await extraction.claim(job.id) is not None
        assert await extraction.claim(job.id) is None

    async def test_one_processing_job_per_file_and_method(self, extraction, stored_job):
        file, job = stored_job
        twin = await extraction.create_job(file, classify(FileCharacteristics("text/plain", 10, "x.txt")))

        assert await extraction.claim(job.id) is not None
        assert await extraction.claim(twin.id) is None


@pytest.mark.unit
class TestRecoverySupport:

    async def test_reschedule_pending(self, extraction, queue_store, stored_job):
        assert await extraction.reschedule_pending(10) == 1
        # Already queued: a second sweep adds nothing
        assert await extraction.reschedule_pending(10) == 0
        assert await queue_store.length(QueueName.EXTRACTION.value) == 1

    async def test_stale_processing_counts_as_attempt(self, extraction, repos, stored_job):
        _, job = stored_job
        claimed = await extraction.claim(job.id)
        await repos.jobs.save(replace(claimed, started_at=stale(started_minutes_ago=60)))

        assert await extraction.fail_stale(stale_after_seconds=900, limit=10) == 1
        recovered = await repos.jobs.get(job.id)
        assert recovered.status == JobStatus.PENDING
        assert recovered.retry_count == 1
        assert recovered.error_code == "STALLED"

    async def test_reset_terminal_job(self, extraction, repos, stored_job):
        _, job = stored_job
        await repos.jobs.save(replace(job, status=JobStatus.FAILED, retry_count=3))
        fresh = await extraction.reset(job.id)
        assert fresh.status == JobStatus.PENDING
        assert fresh.retry_count == 0

    async def test_queue_outage_is_logged_not_raised(self, extraction, queue_store, stored_job):
        _, job = stored_job
        queue_store.down = True
        assert await extraction.try_schedule(job) is False
