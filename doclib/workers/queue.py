"""
Durable priority job queue (Redis).

Per logical queue `<q>` the store keeps:

    <prefix>:<q>:ready     ZSET   entry_id -> ordering score
    <prefix>:<q>:delayed   ZSET   entry_id -> due timestamp (retry backoff)
    <prefix>:<q>:payloads  HASH   entry_id -> JSON {envelope, priority, enqueued_at}
    <prefix>:<q>:inflight  HASH   entry_id -> JSON, popped but not yet acked
    <prefix>:<q>:claimed   ZSET   entry_id -> claim timestamp of an inflight entry
    <prefix>:seq           STRING global enqueue sequence

Ordering score = (PRIORITY_MAX + 1 - priority) * 10^12 + seq. ZPOPMIN
therefore yields the highest priority first and, within one priority, the
lowest sequence (FIFO). Scores stay far below 2^53, so doubles are exact.

An entry id already waiting (ready or delayed) is not added twice; pushes and
the pop bookkeeping run as Lua scripts so a re-push racing a pop never loses
its payload. Entries popped by a process that then died stay in `inflight`
until requeue_inflight() puts them back. Only entries claimed longer ago than
the caller's threshold are touched, so work a live process is still running
on the same queue is left alone.

Durability is Redis's (AOF / RDB). Work that never reached Redis is still
recorded in PostgreSQL and re-enqueued by the recovery sweep.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from doclib.core.config import Settings, settings as default_settings
from doclib.core.errors import TransientIOError
from doclib.processing.strategy import PRIORITY_MAX, PRIORITY_MIN
from doclib.workers.jobs import Job, QueueName, decode_job, encode_job

logger = logging.getLogger(__name__)

SEQ_SPAN = 10 ** 12


def clamp_priority(priority: int) -> int:
    return max(PRIORITY_MIN, min(PRIORITY_MAX, int(priority)))


def ordering_score(priority: int, seq: int) -> int:
    return (PRIORITY_MAX + 1 - clamp_priority(priority)) * SEQ_SPAN + seq


@dataclass(frozen=True)
class QueueEntry:
    entry_id:    str
    queue:       str
    priority:    int
    envelope:    dict[str, Any]
    enqueued_at: float


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class QueueStore(ABC):
    """Durable storage behind JobQueue. All methods raise TransientIOError on outage."""

    @abstractmethod
    async def push(
        self,
        queue: str,
        entry_id: str,
        envelope: dict[str, Any],
        priority: int,
        delay_seconds: float = 0.0,
    ) -> bool:
        """Add an entry; False when that entry id is already waiting."""

    @abstractmethod
    async def pop(self, queue: str, timeout_seconds: float) -> QueueEntry | None:
        """Block up to `timeout_seconds` for the next ready entry."""

    @abstractmethod
    async def ack(self, queue: str, entry_id: str) -> None: ...

    @abstractmethod
    async def length(self, queue: str) -> int:
        """Ready entries (delayed ones excluded)."""

    @abstractmethod
    async def delayed_length(self, queue: str) -> int: ...

    @abstractmethod
    async def promote_due(self, queue: str) -> int:
        """Move delayed entries whose time has come into the ready set."""

    @abstractmethod
    async def requeue_inflight(self, queue: str, older_than_seconds: float = 0.0) -> int:
        """Return popped-but-unacked entries claimed at least `older_than_seconds` ago."""

    @abstractmethod
    async def ping(self) -> bool: ...


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------

_PUSH_LUA = """
if redis.call('ZSCORE', KEYS[1], ARGV[1]) or redis.call('ZSCORE', KEYS[2], ARGV[1]) then
  return 0
end
redis.call('HSET', KEYS[3], ARGV[1], ARGV[2])
if ARGV[4] == 'delayed' then
  redis.call('ZADD', KEYS[2], ARGV[3], ARGV[1])
else
  redis.call('ZADD', KEYS[1], ARGV[3], ARGV[1])
end
return 1
"""

# After BZPOPMIN: move the payload to inflight. Keep it in `payloads` when a
# newer push of the same id is already waiting again.
_CLAIM_LUA = """
local data = redis.call('HGET', KEYS[3], ARGV[1])
if not data then
  return false
end
if not (redis.call('ZSCORE', KEYS[1], ARGV[1]) or redis.call('ZSCORE', KEYS[2], ARGV[1])) then
  redis.call('HDEL', KEYS[3], ARGV[1])
end
redis.call('HSET', KEYS[4], ARGV[1], data)
redis.call('ZADD', KEYS[5], ARGV[2], ARGV[1])
return data
"""


class RedisQueueStore(QueueStore):

    def __init__(
        self,
        client: aioredis.Redis | None = None,
        cfg: Settings | None = None,
    ) -> None:
        cfg = cfg or default_settings
        # decode_responses=True: scripts and hashes hand back str, not bytes
        self._redis = client or aioredis.from_url(cfg.redis_url, decode_responses=True)
        self._prefix = cfg.queue_key_prefix
        self._push_script = self._redis.register_script(_PUSH_LUA)
        self._claim_script = self._redis.register_script(_CLAIM_LUA)

    def _keys(self, queue: str) -> tuple[str, str, str, str]:
        base = f"{self._prefix}:{queue}"
        return f"{base}:ready", f"{base}:delayed", f"{base}:payloads", f"{base}:inflight"

    def _claimed_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:claimed"

    async def _next_seq(self) -> int:
        return int(await self._redis.incr(f"{self._prefix}:seq"))

    async def push(
        self,
        queue: str,
        entry_id: str,
        envelope: dict[str, Any],
        priority: int,
        delay_seconds: float = 0.0,
    ) -> bool:
        ready, delayed, payloads, _ = self._keys(queue)
        data = json.dumps({
            "envelope": envelope,
            "priority": clamp_priority(priority),
            "enqueued_at": time.time(),
        })
        try:
            if delay_seconds > 0:
                score: float = time.time() + delay_seconds
                target = "delayed"
            else:
                score = ordering_score(priority, await self._next_seq())
                target = "ready"
            added = await self._push_script(
                keys=[ready, delayed, payloads],
                args=[entry_id, data, score, target],
            )
        except RedisError as exc:
            raise TransientIOError(f"Queue push failed ({queue}): {exc}") from exc
        return bool(added)

    async def pop(self, queue: str, timeout_seconds: float) -> QueueEntry | None:
        ready, delayed, payloads, inflight = self._keys(queue)
        try:
            popped = await self._redis.bzpopmin(ready, timeout=timeout_seconds)
            if popped is None:
                return None
            _, entry_id, _ = popped
            raw = await self._claim_script(
                keys=[ready, delayed, payloads, inflight, self._claimed_key(queue)],
                args=[entry_id, time.time()],
            )
        except RedisError as exc:
            raise TransientIOError(f"Queue pop failed ({queue}): {exc}") from exc

        if raw is None:
            logger.error("Queue entry without payload dropped | queue=%s entry=%s", queue, entry_id)
            return None
        data = json.loads(raw)
        return QueueEntry(
            entry_id=entry_id,
            queue=queue,
            priority=data["priority"],
            envelope=data["envelope"],
            enqueued_at=data["enqueued_at"],
        )

    async def ack(self, queue: str, entry_id: str) -> None:
        _, _, _, inflight = self._keys(queue)
        try:
            await self._redis.hdel(inflight, entry_id)
            await self._redis.zrem(self._claimed_key(queue), entry_id)
        except RedisError as exc:
            raise TransientIOError(f"Queue ack failed ({queue}): {exc}") from exc

    async def length(self, queue: str) -> int:
        ready, _, _, _ = self._keys(queue)
        try:
            return int(await self._redis.zcard(ready))
        except RedisError as exc:
            raise TransientIOError(f"Queue length failed ({queue}): {exc}") from exc

    async def delayed_length(self, queue: str) -> int:
        _, delayed, _, _ = self._keys(queue)
        try:
            return int(await self._redis.zcard(delayed))
        except RedisError as exc:
            raise TransientIOError(f"Queue length failed ({queue}): {exc}") from exc

    async def promote_due(self, queue: str) -> int:
        ready, delayed, payloads, _ = self._keys(queue)
        promoted = 0
        try:
            due = await self._redis.zrangebyscore(delayed, "-inf", time.time())
            for entry_id in due:
                # ZREM succeeds for exactly one promoter
                if not await self._redis.zrem(delayed, entry_id):
                    continue
                raw = await self._redis.hget(payloads, entry_id)
                if raw is None:
                    continue
                priority = json.loads(raw)["priority"]
                score = ordering_score(priority, await self._next_seq())
                await self._redis.zadd(ready, {entry_id: score}, nx=True)
                promoted += 1
        except RedisError as exc:
            raise TransientIOError(f"Queue promote failed ({queue}): {exc}") from exc
        return promoted

    async def requeue_inflight(self, queue: str, older_than_seconds: float = 0.0) -> int:
        ready, delayed, payloads, inflight = self._keys(queue)
        claimed = self._claimed_key(queue)
        cutoff = time.time() - older_than_seconds
        requeued = 0
        try:
            entries = await self._redis.hgetall(inflight)
            for entry_id, raw in entries.items():
                claimed_at = await self._redis.zscore(claimed, entry_id)
                if claimed_at is not None and claimed_at > cutoff:
                    continue
                data = json.loads(raw)
                added = await self._push_script(
                    keys=[ready, delayed, payloads],
                    args=[
                        entry_id,
                        raw,
                        ordering_score(data["priority"], await self._next_seq()),
                        "ready",
                    ],
                )
                await self._redis.hdel(inflight, entry_id)
                await self._redis.zrem(claimed, entry_id)
                requeued += int(bool(added))
        except RedisError as exc:
            raise TransientIOError(f"Queue requeue failed ({queue}): {exc}") from exc
        return requeued

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError as exc:
            logger.error("Queue store ping failed: %s", exc)
            return False

    async def close(self) -> None:
        await self._redis.aclose()


# ---------------------------------------------------------------------------
# Typed facade
# ---------------------------------------------------------------------------

class JobQueue:
    """
    enqueue() / next() in terms of job kinds instead of raw envelopes.
    Constructed explicitly and passed to whoever needs it.
    """

    def __init__(self, store: QueueStore) -> None:
        self._store = store

    @property
    def store(self) -> QueueStore:
        return self._store

    async def enqueue(
        self,
        queue_name: QueueName | str,
        job: Job,
        priority: int,
        *,
        delay_seconds: float = 0.0,
    ) -> bool:
        queue = QueueName(queue_name)
        if job.queue != queue:
            raise ValueError(f"{type(job).__name__} does not belong on queue {queue.value!r}")

        added = await self._store.push(
            queue.value,
            job.entry_id,
            encode_job(job),
            clamp_priority(priority),
            delay_seconds,
        )
        logger.info(
            "Enqueued | queue=%s entry=%s priority=%d delay=%.1fs new=%s",
            queue.value, job.entry_id, clamp_priority(priority), delay_seconds, added,
        )
        return added

    async def submit(self, job: Job, priority: int, *, delay_seconds: float = 0.0) -> bool:
        """enqueue() on the job kind's own queue."""
        return await self.enqueue(job.queue, job, priority, delay_seconds=delay_seconds)

    async def next(
        self,
        queue_name: QueueName | str,
        timeout_seconds: float,
    ) -> tuple[QueueEntry, Job | None] | None:
        """
        Next entry of a queue, or None on timeout. The job is None when the
        envelope cannot be decoded; the caller acks it away.
        """
        entry = await self._store.pop(QueueName(queue_name).value, timeout_seconds)
        if entry is None:
            return None
        try:
            job = decode_job(entry.envelope)
        except (KeyError, ValueError, TypeError) as exc:
            logger.error("Undecodable queue entry | entry=%s error=%s", entry.entry_id, exc)
            return entry, None
        return entry, job

    async def ack(self, entry: QueueEntry) -> None:
        await self._store.ack(entry.queue, entry.entry_id)

    async def length(self, queue_name: QueueName | str) -> int:
        return await self._store.length(QueueName(queue_name).value)

    async def delayed_length(self, queue_name: QueueName | str) -> int:
        return await self._store.delayed_length(QueueName(queue_name).value)

    async def promote_due(self, queue_name: QueueName | str) -> int:
        return await self._store.promote_due(QueueName(queue_name).value)

    async def requeue_inflight(
        self,
        queue_name: QueueName | str,
        older_than_seconds: float = 0.0,
    ) -> int:
        return await self._store.requeue_inflight(QueueName(queue_name).value, older_than_seconds)

    async def ping(self) -> bool:
        return await self._store.ping()
