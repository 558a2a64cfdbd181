"""
Job kinds and the extraction-job state machine.

Job kinds
─────────
A closed set of frozen dataclasses — the only things that travel through the
queue. Each kind knows its queue and a stable entry id; the entry id is the
queue's de-duplication key, so re-enqueueing the same logical job (e.g. by the
recovery sweep) never produces a second queue entry.

    ExtractionJob  extraction     extract text for one persisted job row
    IndexJob       indexing       project a file into the search engine
    SyncJob        storage-sync   run one storage sync job row
    AIJob          ai-processing  downstream summary / tag generation

State machine (text_extraction_jobs.status)
───────────────────────────────────────────
    pending ──claim──▶ processing ──complete──▶ completed
       ▲                   │
       │                 fail
       │                   ▼
       └──────retry─────  failed   (terminal once retry_count >= max_retries)

Only the functions below produce new job states; nobody assigns `status`
directly. retry() is the single place the retry bound is enforced.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from doclib.core.errors import RetryLimitExceeded
from doclib.models.records import ExtractionJobRecord, JobStatus
from doclib.processing.strategy import ExtractionMethod


class QueueName(str, Enum):
    EXTRACTION    = "extraction"
    INDEXING      = "indexing"
    STORAGE_SYNC  = "storage-sync"
    AI_PROCESSING = "ai-processing"


# ---------------------------------------------------------------------------
# Job kinds (tagged union)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractionJob:
    job_id:          uuid.UUID
    file_id:         uuid.UUID
    organization_id: uuid.UUID
    method:          ExtractionMethod
    priority:        int

    kind:  ClassVar[str] = "extraction"
    queue: ClassVar[QueueName] = QueueName.EXTRACTION

    @property
    def entry_id(self) -> str:
        return f"extraction:{self.job_id}"


@dataclass(frozen=True)
class IndexJob:
    file_id:         uuid.UUID
    organization_id: uuid.UUID
    reason:          str = "extraction"   # extraction | retry | reindex

    kind:  ClassVar[str] = "index"
    queue: ClassVar[QueueName] = QueueName.INDEXING

    @property
    def entry_id(self) -> str:
        return f"index:{self.file_id}"


@dataclass(frozen=True)
class SyncJob:
    sync_job_id:     uuid.UUID
    organization_id: uuid.UUID

    kind:  ClassVar[str] = "sync"
    queue: ClassVar[QueueName] = QueueName.STORAGE_SYNC

    @property
    def entry_id(self) -> str:
        return f"sync:{self.sync_job_id}"


@dataclass(frozen=True)
class AIJob:
    file_id:         uuid.UUID
    organization_id: uuid.UUID
    operations:      tuple[str, ...] = ("summary", "tags")
    attempt:         int = 0

    kind:  ClassVar[str] = "ai"
    queue: ClassVar[QueueName] = QueueName.AI_PROCESSING

    @property
    def entry_id(self) -> str:
        return f"ai:{self.file_id}"


Job = Union[ExtractionJob, IndexJob, SyncJob, AIJob]

_KINDS: dict[str, type] = {
    cls.kind: cls for cls in (ExtractionJob, IndexJob, SyncJob, AIJob)
}


# ---------------------------------------------------------------------------
# Envelope serialization (JSON-safe dicts)
# ---------------------------------------------------------------------------

def encode_job(job: Job) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for f in fields(job):
        value = getattr(job, f.name)
        if isinstance(value, uuid.UUID):
            value = str(value)
        elif isinstance(value, Enum):
            value = value.value
        elif isinstance(value, tuple):
            value = list(value)
        payload[f.name] = value
    return {"kind": job.kind, "payload": payload}


def decode_job(envelope: dict[str, Any]) -> Job:
    try:
        cls = _KINDS[envelope["kind"]]
    except KeyError as exc:
        raise ValueError(f"Unknown job kind: {envelope.get('kind')!r}") from exc

    payload = envelope["payload"]
    values: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in payload:
            continue
        value = payload[f.name]
        if f.name.endswith("_id"):
            value = uuid.UUID(value)
        elif f.name == "method":
            value = ExtractionMethod(value)
        elif f.name == "operations":
            value = tuple(value)
        values[f.name] = value
    return cls(**values)


# ---------------------------------------------------------------------------
# Extraction job transitions
# ---------------------------------------------------------------------------

class InvalidTransition(ValueError):
    pass


def _require(job: ExtractionJobRecord, *allowed: JobStatus) -> None:
    if job.status not in allowed:
        raise InvalidTransition(
            f"job {job.id}: {job.status.value} is not one of "
            f"{', '.join(s.value for s in allowed)}"
        )


def start(job: ExtractionJobRecord, now: datetime) -> ExtractionJobRecord:
    _require(job, JobStatus.PENDING)
    return replace(job, status=JobStatus.PROCESSING, started_at=now, completed_at=None)


def complete(
    job: ExtractionJobRecord,
    now: datetime,
    metadata: dict | None = None,
) -> ExtractionJobRecord:
    _require(job, JobStatus.PROCESSING)
    return replace(
        job,
        status=JobStatus.COMPLETED,
        completed_at=now,
        error_message=None,
        error_code=None,
        job_metadata={**job.job_metadata, **(metadata or {})},
    )


def fail(
    job: ExtractionJobRecord,
    message: str,
    code: str,
    now: datetime,
) -> ExtractionJobRecord:
    """Record one failed attempt; the job is `failed` until retry() says otherwise."""
    _require(job, JobStatus.PROCESSING, JobStatus.PENDING)
    return replace(
        job,
        status=JobStatus.FAILED,
        retry_count=job.retry_count + 1,
        error_message=message[:2000],
        error_code=code,
        completed_at=now,
    )


def can_retry(job: ExtractionJobRecord) -> bool:
    return job.status == JobStatus.FAILED and job.retry_count < job.max_retries


def retry(job: ExtractionJobRecord) -> ExtractionJobRecord:
    """
    failed -> pending, only while the retry budget lasts. Once retry_count
    reaches max_retries the job is terminal and only reset() revives it.
    """
    _require(job, JobStatus.FAILED)
    if job.retry_count >= job.max_retries:
        raise RetryLimitExceeded(
            f"job {job.id} failed {job.retry_count} times (max {job.max_retries})"
        )
    return replace(job, status=JobStatus.PENDING, started_at=None, completed_at=None)


def release(job: ExtractionJobRecord) -> ExtractionJobRecord:
    """processing -> pending without spending a retry (inline fallback)."""
    _require(job, JobStatus.PROCESSING)
    return replace(
        job,
        status=JobStatus.PENDING,
        started_at=None,
        error_message=None,
        error_code=None,
    )


def reset(job: ExtractionJobRecord) -> ExtractionJobRecord:
    """Operator reset of a terminal job: fresh retry budget."""
    _require(job, JobStatus.FAILED)
    return replace(
        job,
        status=JobStatus.PENDING,
        retry_count=0,
        started_at=None,
        completed_at=None,
    )


def retry_delay_seconds(retry_count: int, base_seconds: float) -> float:
    """Exponential backoff: base, 2x base, 4x base ..."""
    return base_seconds * (2 ** max(retry_count - 1, 0))
