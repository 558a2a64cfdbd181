"""
Unit Tests — Priority job queue
═══════════════════════════════
Tests for doclib/workers/queue.py

JobQueue runs over the in-memory store (same score + de-dup rules as Redis);
RedisQueueStore is exercised against a mocked redis client for its error
mapping; its behaviour over a real Redis protocol lives in test_queue_redis.py.

Coverage:
  ✅ Higher priority first; FIFO within one priority
  ✅ Priorities clamped into [1, 10]
  ✅ Same logical job enqueued twice → one entry
  ✅ Delayed entries invisible until promoted
  ✅ Popped-but-unacked entries come back via requeue_inflight
  ✅ Job kind on the wrong queue rejected
  ✅ Undecodable envelope handed back as (entry, None)
  ✅ Redis errors → TransientIOError; ping never raises
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from doclib.core.errors import TransientIOError
from doclib.processing.strategy import ExtractionMethod
from doclib.workers.jobs import ExtractionJob, IndexJob, QueueName
from doclib.workers.queue import RedisQueueStore, ordering_score


def _extraction(priority: int = 5) -> ExtractionJob:
    return ExtractionJob(
        job_id=uuid.uuid4(),
        file_id=uuid.uuid4(),
        organization_id=uuid.uuid4(),
        method=ExtractionMethod.DIRECT_TEXT,
        priority=priority,
    )


async def _drain(queue, name=QueueName.EXTRACTION) -> list:
    out = []
    while (got := await queue.next(name, 0.0)) is not None:
        entry, job = got
        out.append(job)
        await queue.ack(entry)
    return out


@pytest.mark.unit
class TestOrdering:

    async def test_highest_priority_first(self, queue):
        low, high, mid = _extraction(2), _extraction(9), _extraction(5)
        for job in (low, high, mid):
            await queue.submit(job, job.priority)

        assert await _drain(queue) == [high, mid, low]

    async def test_fifo_within_priority(self, queue):
        batch = [_extraction(5) for _ in range(5)]
        for job in batch:
            await queue.submit(job, 5)

        assert await _drain(queue) == batch

    async def test_out_of_range_priority_clamped(self, queue):
        over, normal = _extraction(), _extraction()
        await queue.submit(normal, 10)
        await queue.submit(over, 42)

        entry, job = await queue.next(QueueName.EXTRACTION, 0.0)
        assert entry.priority == 10
        assert job == normal

    def test_score_orders_priority_before_sequence(self):
        assert ordering_score(9, 10_000) < ordering_score(8, 1)
        assert ordering_score(5, 1) < ordering_score(5, 2)


@pytest.mark.unit
class TestDeduplication:

    async def test_same_job_enqueued_once(self, queue):
        job = _extraction()
        assert await queue.submit(job, 5) is True
        assert await queue.submit(job, 5) is False
        assert await queue.length(QueueName.EXTRACTION) == 1

    async def test_requeue_after_pop_allowed(self, queue):
        job = _extraction()
        await queue.submit(job, 5)
        entry, _ = await queue.next(QueueName.EXTRACTION, 0.0)
        assert await queue.submit(job, 5) is True
        await queue.ack(entry)
        assert await queue.length(QueueName.EXTRACTION) == 1


@pytest.mark.unit
class TestDelayedAndInflight:

    async def test_delayed_entry_waits_for_promotion(self, queue, queue_store):
        job = _extraction()
        await queue.submit(job, 5, delay_seconds=30)

        assert await queue.length(QueueName.EXTRACTION) == 0
        assert await queue.delayed_length(QueueName.EXTRACTION) == 1
        assert await queue.next(QueueName.EXTRACTION, 0.0) is None

        assert await queue.promote_due(QueueName.EXTRACTION) == 0
        assert await queue_store.promote_due(QueueName.EXTRACTION.value, now=float("inf")) == 1
        assert await _drain(queue) == [job]

    async def test_unacked_entry_requeued(self, queue):
        job = _extraction()
        await queue.submit(job, 5)
        await queue.next(QueueName.EXTRACTION, 0.0)   # worker dies before ack

        assert await queue.length(QueueName.EXTRACTION) == 0
        assert await queue.requeue_inflight(QueueName.EXTRACTION) == 1
        assert await _drain(queue) == [job]

    async def test_acked_entry_not_requeued(self, queue):
        await queue.submit(_extraction(), 5)
        await _drain(queue)
        assert await queue.requeue_inflight(QueueName.EXTRACTION) == 0


@pytest.mark.unit
class TestValidation:

    async def test_wrong_queue_rejected(self, queue):
        with pytest.raises(ValueError):
            await queue.enqueue(QueueName.INDEXING, _extraction(), 5)

    async def test_queues_are_independent(self, queue):
        await queue.submit(IndexJob(uuid.uuid4(), uuid.uuid4()), 8)
        assert await queue.next(QueueName.EXTRACTION, 0.0) is None
        assert await queue.length(QueueName.INDEXING) == 1

    async def test_undecodable_envelope(self, queue, queue_store):
        await queue_store.push("extraction", "garbage", {"kind": "nope", "payload": {}}, 5)
        entry, job = await queue.next(QueueName.EXTRACTION, 0.0)
        assert entry.entry_id == "garbage"
        assert job is None

    async def test_pop_times_out_empty(self, queue):
        assert await queue.next(QueueName.AI_PROCESSING, 0.01) is None


@pytest.mark.unit
class TestRedisQueueStoreErrors:

    def _store(self, test_settings, client) -> RedisQueueStore:
        return RedisQueueStore(client=client, cfg=test_settings)

    def _client(self) -> MagicMock:
        client = MagicMock()
        client.register_script.return_value = AsyncMock(
            side_effect=RedisConnectionError("connection refused"),
        )
        client.incr = AsyncMock(return_value=1)
        return client

    async def test_push_failure_is_transient(self, test_settings):
        store = self._store(test_settings, self._client())
        with pytest.raises(TransientIOError):
            await store.push("extraction", "e1", {"kind": "x", "payload": {}}, 5)

    async def test_pop_failure_is_transient(self, test_settings):
        client = self._client()
        client.bzpopmin = AsyncMock(side_effect=RedisConnectionError("reset"))
        store = self._store(test_settings, client)
        with pytest.raises(TransientIOError):
            await store.pop("extraction", 0.1)

    async def test_ping_reports_false(self, test_settings):
        client = self._client()
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await self._store(test_settings, client).ping() is False

    async def test_delayed_push_uses_delayed_set(self, test_settings):
        client = self._client()
        script = AsyncMock(return_value=1)
        client.register_script.return_value = script
        store = self._store(test_settings, client)

        assert await store.push("extraction", "e1", {"kind": "x", "payload": {}}, 5, delay_seconds=10)
        kwargs = script.await_args.kwargs
        assert kwargs["args"][3] == "delayed"
        assert kwargs["keys"][1] == f"{test_settings.queue_key_prefix}:extraction:delayed"
        client.incr.assert_not_awaited()
