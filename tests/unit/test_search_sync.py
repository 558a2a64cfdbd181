"""
Unit Tests — Search Index Synchronizer + Elasticsearch backend
══════════════════════════════════════════════════════════════
Tests for doclib/search/synchronizer.py and doclib/search/elasticsearch.py

Coverage:
  ✅ index_file is idempotent: one document per file, status indexed
  ✅ Unhealthy engine → index_failed without calling the engine, no retry spent
  ✅ Upsert failure → index_failed, retry_count + 1
  ✅ Unexpected backend exception never leaves a row stuck in indexing
  ✅ Deleted file → document removed
  ✅ bulk_index: batches, per-document rejections, outage aborts
  ✅ bulk_index: whole-batch rejection fails that batch and moves on
  ✅ retry_failed re-enqueues at retry priority, skips exhausted rows
  ✅ Health: healthy / degraded / unhealthy
  ✅ ElasticsearchBackend request mapping (httpx.MockTransport)
"""

from __future__ import annotations

import json
import uuid
from unittest.mock import AsyncMock

import httpx
import pytest

from doclib.core.errors import IndexUnavailableError, PipelineError
from doclib.models.records import ContentRecord, FileRecord, IndexState, IndexStatusRecord
from doclib.processing.strategy import ExtractionMethod
from doclib.search.elasticsearch import ElasticsearchBackend
from doclib.search.synchronizer import build_document, parse_tags
from doclib.workers.jobs import QueueName, decode_job


async def _file(repos, org_id, **overrides) -> FileRecord:
    values = dict(
        id=uuid.uuid4(),
        organization_id=org_id,
        original_name="handbook.txt",
        mime_type="text/plain",
        size_bytes=128,
        file_type="text",
        checksum_sha256="0" * 64,
    )
    values.update(overrides)
    return await repos.files.add(FileRecord(**values))


async def _content(repos, file: FileRecord, text: str = "employee handbook") -> None:
    await repos.contents.upsert(ContentRecord(
        file_id=file.id,
        organization_id=file.organization_id,
        full_text=text,
        word_count=len(text.split()),
        character_count=len(text),
        text_hash="h",
        extraction_method=ExtractionMethod.DIRECT_TEXT,
    ))


@pytest.mark.unit
class TestIndexFile:

    async def test_index_twice_one_document(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id, tags=["hr"], title="Handbook")
        await _content(repos, file)

        first = await search.index_file(file.id)
        second = await search.index_file(file.id)

        assert first.status == second.status == IndexState.INDEXED
        assert list(search_backend.documents) == [str(file.id)]
        doc = search_backend.documents[str(file.id)]
        assert doc["organization_id"] == str(org_id)
        assert doc["content"] == "employee handbook"
        assert doc["title"] == "Handbook"
        assert doc["extraction_method"] == "direct_text"

    async def test_metadata_only_document_without_content(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id)
        await search.index_file(file.id)
        doc = search_backend.documents[str(file.id)]
        assert doc["content"] == ""
        assert doc["title"] == "handbook.txt"
        assert doc["word_count"] == 0

    async def test_unhealthy_engine_deferred(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id)
        search_backend.available = False

        status = await search.index_file(file.id)

        assert status.status == IndexState.INDEX_FAILED
        assert status.retry_count == 0
        assert status.last_error == "search engine unavailable"
        assert search_backend.upserts == 0

    async def test_red_cluster_deferred(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id)
        search_backend.cluster_status = "red"
        assert (await search.index_file(file.id)).status == IndexState.INDEX_FAILED
        assert search_backend.upserts == 0

    async def test_upsert_failure_counts_retry(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id)
        search_backend.upsert = AsyncMock(side_effect=PipelineError("mapping conflict", code="INDEX_REJECTED"))

        status = await search.index_file(file.id)

        assert status.status == IndexState.INDEX_FAILED
        assert status.retry_count == 1
        assert "mapping conflict" in status.last_error

    async def test_unexpected_backend_error_recorded(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id)
        search_backend.upsert = AsyncMock(side_effect=RuntimeError("serializer blew up"))

        status = await search.index_file(file.id)

        assert status.status == IndexState.INDEX_FAILED
        assert status.retry_count == 1
        assert "serializer blew up" in status.last_error
        assert (await repos.statuses.get(file.id)).status == IndexState.INDEX_FAILED

    async def test_content_lookup_error_recorded(self, search, repos, org_id):
        file = await _file(repos, org_id)
        repos.contents.get = AsyncMock(side_effect=RuntimeError("content store gone"))

        status = await search.index_file(file.id)

        assert status.status == IndexState.INDEX_FAILED
        assert (await repos.statuses.get(file.id)).status != IndexState.INDEXING

    async def test_success_clears_previous_failure(self, search, repos, org_id):
        file = await _file(repos, org_id)
        await repos.statuses.save(IndexStatusRecord(
            file_id=file.id, organization_id=org_id,
            status=IndexState.INDEX_FAILED, retry_count=2, last_error="timeout",
        ))
        status = await search.index_file(file.id)
        assert status.retry_count == 0
        assert status.last_error is None
        assert status.last_indexed_at is not None

    async def test_deleted_file_removed(self, search, repos, search_backend, org_id):
        file = await _file(repos, org_id)
        await search.index_file(file.id)
        await repos.files.soft_delete(file.id)

        status = await search.index_file(file.id)

        assert str(file.id) not in search_backend.documents
        assert status.status == IndexState.NOT_INDEXED

    async def test_remove_unknown_file(self, search):
        assert await search.remove_from_index(uuid.uuid4()) is None

    async def test_status_of_never_indexed_file(self, search, repos, org_id):
        file = await _file(repos, org_id)
        status = await search.get_status(file.id)
        assert status.status == IndexState.NOT_INDEXED
        assert status.organization_id == org_id
        assert await search.get_status(uuid.uuid4()) is None

    async def test_record_failure_after_timeout(self, search, repos, org_id):
        file = await _file(repos, org_id)
        await search.mark_not_indexed(file)
        await search.record_failure(file.id, "indexing timed out")
        status = await repos.statuses.get(file.id)
        assert status.status == IndexState.INDEX_FAILED
        assert status.retry_count == 1


@pytest.mark.unit
class TestBulkIndex:

    async def test_batches_and_rejections(self, search, repos, search_backend, org_id, other_org_id):
        files = [await _file(repos, org_id) for _ in range(5)]
        await _file(repos, other_org_id)
        rejected = files[2]
        search_backend.rejected.add(str(rejected.id))

        summary = await search.bulk_index(org_id, batch_size=2)

        assert summary == {"indexed": 4, "failed": 1, "batches": 3, "aborted": False}
        assert len(search_backend.documents) == 4
        status = await repos.statuses.get(rejected.id)
        assert status.status == IndexState.INDEX_FAILED
        assert status.last_error == "mapper_parsing_exception"

    async def test_outage_aborts(self, search, repos, search_backend, org_id):
        files = [await _file(repos, org_id) for _ in range(3)]
        search_backend.available = False

        summary = await search.bulk_index(org_id, batch_size=10)

        assert summary["aborted"] is True
        assert summary["failed"] == 3
        for file in files:
            assert (await repos.statuses.get(file.id)).retry_count == 1

    async def test_rejected_batch_fails_and_continues(self, search, repos, search_backend, org_id):
        files = [await _file(repos, org_id) for _ in range(3)]
        real_bulk = search_backend.bulk_upsert
        calls = []

        async def first_batch_rejected(documents):
            calls.append(len(documents))
            if len(calls) == 1:
                raise PipelineError("request entity too large", code="INDEX_REJECTED")
            return await real_bulk(documents)

        search_backend.bulk_upsert = first_batch_rejected

        summary = await search.bulk_index(org_id, batch_size=2)

        assert summary == {"indexed": 1, "failed": 2, "batches": 2, "aborted": False}
        assert calls == [2, 1]
        statuses = [await repos.statuses.get(file.id) for file in files]
        assert sorted(s.status.value for s in statuses) == sorted(
            [IndexState.INDEX_FAILED.value] * 2 + [IndexState.INDEXED.value]
        )
        for status in statuses:
            if status.status == IndexState.INDEX_FAILED:
                assert status.retry_count == 1
                assert "request entity too large" in status.last_error

    async def test_reindex_skips_deleted(self, search, repos, search_backend, org_id):
        live = await _file(repos, org_id)
        gone = await _file(repos, org_id, is_deleted=True, is_active=False)
        await search.reindex_organization(org_id)
        assert str(live.id) in search_backend.documents
        assert str(gone.id) not in search_backend.documents


@pytest.mark.unit
class TestRetryFailed:

    async def test_requeues_under_bound_only(self, search, repos, queue_store, org_id, test_settings):
        retryable = await _file(repos, org_id)
        exhausted = await _file(repos, org_id)
        for file, count in ((retryable, 1), (exhausted, test_settings.index_max_retries)):
            await repos.statuses.save(IndexStatusRecord(
                file_id=file.id, organization_id=org_id,
                status=IndexState.INDEX_FAILED, retry_count=count,
            ))

        assert await search.retry_failed() == 1

        (envelope,) = queue_store.envelopes(QueueName.INDEXING.value)
        job = decode_job(envelope)
        assert job.file_id == retryable.id
        assert job.reason == "retry"
        entry = next(iter(queue_store.ready[QueueName.INDEXING.value].values()))[1]
        assert entry["priority"] == test_settings.index_retry_priority


@pytest.mark.unit
class TestHealth:

    @pytest.mark.parametrize("available,cluster,expected", [
        (True,  "green",  "healthy"),
        (True,  "yellow", "degraded"),
        (True,  "red",    "unhealthy"),
        (False, None,     "unhealthy"),
    ])
    async def test_status(self, search, search_backend, available, cluster, expected):
        search_backend.available = available
        search_backend.cluster_status = cluster
        assert (await search.health_check())["status"] == expected


@pytest.mark.unit
class TestHelpers:

    @pytest.mark.parametrize("raw,expected", [
        (None, []),
        (["a", " b ", ""], ["a", "b"]),
        ('["x", "y"]', ["x", "y"]),
        ("legal, finance ,", ["legal", "finance"]),
        ("[not json", ["[not json"]),
    ])
    def test_parse_tags(self, raw, expected):
        assert parse_tags(raw) == expected

    def test_document_carries_tenant(self, org_id):
        file = FileRecord(
            id=uuid.uuid4(), organization_id=org_id, original_name="a.txt",
            mime_type="text/plain", size_bytes=1, file_type="text", checksum_sha256="0",
        )
        assert build_document(file, None)["organization_id"] == str(org_id)


@pytest.mark.unit
class TestElasticsearchBackend:

    def _backend(self, test_settings, handler) -> ElasticsearchBackend:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://es.test")
        return ElasticsearchBackend(test_settings, client=client)

    async def test_upsert_puts_document(self, test_settings):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(201, json={"result": "created"})

        await self._backend(test_settings, handler).upsert("f1", {"title": "x"})
        assert seen == [("PUT", f"/{test_settings.search_index}/_doc/f1", {"title": "x"})]

    async def test_server_error_is_unavailable(self, test_settings):
        backend = self._backend(test_settings, lambda request: httpx.Response(503, text="busy"))
        with pytest.raises(IndexUnavailableError):
            await backend.upsert("f1", {})

    async def test_rejection_not_retryable(self, test_settings):
        backend = self._backend(test_settings, lambda request: httpx.Response(400, text="mapper"))
        with pytest.raises(PipelineError) as exc:
            await backend.upsert("f1", {})
        assert exc.value.code == "INDEX_REJECTED"
        assert not exc.value.retryable

    async def test_delete_missing_is_success(self, test_settings):
        backend = self._backend(test_settings, lambda request: httpx.Response(404))
        await backend.delete("gone")

    async def test_bulk_reports_per_item(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            lines = request.content.decode().strip().split("\n")
            assert len(lines) == 4
            return httpx.Response(200, json={"items": [
                {"index": {"_id": "a", "status": 201}},
                {"index": {"_id": "b", "status": 400, "error": {"reason": "failed to parse"}}},
            ]})

        result = await self._backend(test_settings, handler).bulk_upsert({"a": {}, "b": {}})
        assert result.indexed == ["a"]
        assert result.failed == {"b": "failed to parse"}

    async def test_health_unreachable(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        health = await self._backend(test_settings, handler).health()
        assert health["reachable"] is False

    async def test_health_reports_cluster_and_index(self, test_settings):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/_cluster/health":
                return httpx.Response(200, json={"status": "yellow"})
            return httpx.Response(404)

        health = await self._backend(test_settings, handler).health()
        assert health == {"reachable": True, "cluster_status": "yellow", "index_exists": False}
