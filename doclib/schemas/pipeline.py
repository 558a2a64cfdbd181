"""
Pipeline API — Pydantic Request/Response Schemas

File routes   (/api/v1/files):  upload, delete, download link, index status
Ops routes    (/api/v1/ops):    processor control, recovery sweep, extraction
                                job lookup + reset, search health + reindex,
                                storage sync, usage

All error bodies share ErrorResponse. Pipeline exceptions are mapped onto
HTTP status codes in one place (status_for_error) and rendered by the
application-level exception handler.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import status
from pydantic import BaseModel, Field

from doclib.core.errors import (
    IndexUnavailableError,
    NotFoundError,
    PipelineError,
    PolicyViolationError,
    QuotaExceededError,
    TransientIOError,
)
from doclib.models.records import IndexState, JobStatus, SyncStatus, SyncType
from doclib.processing.strategy import ExtractionMethod


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str


class ErrorResponse(BaseModel):
    error_code: str = Field(..., description="Stable machine-readable code")
    message:    str = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None = Field(None, description="Trace ID for log correlation")


_POLICY_STATUS = {
    "FILE_TOO_LARGE":   status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    "MIME_NOT_ALLOWED": status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
}


def status_for_error(exc: PipelineError) -> int:
    if isinstance(exc, QuotaExceededError):
        return status.HTTP_507_INSUFFICIENT_STORAGE
    if isinstance(exc, PolicyViolationError):
        return _POLICY_STATUS.get(exc.code, status.HTTP_422_UNPROCESSABLE_ENTITY)
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (TransientIOError, IndexUnavailableError)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

class ExtractionPlanResponse(BaseModel):
    method:                ExtractionMethod
    priority:              int = Field(..., ge=1, le=10)
    use_async:             bool
    estimated_duration_ms: int


class UploadResponse(BaseModel):
    """201 — the file is durably stored; extraction may still be running."""
    file_id:           UUID
    job_id:            UUID
    extraction_status: JobStatus
    processed_inline:  bool
    backup_deferred:   bool = Field(..., description="Backup copy owed by a scheduled file sync")
    sync_job_id:       UUID | None = None
    plan:              ExtractionPlanResponse


class DownloadLinkResponse(BaseModel):
    file_id:     UUID
    url:         str
    ttl_seconds: int


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

class SyncRequest(BaseModel):
    sync_type: SyncType = SyncType.INCREMENTAL
    file_id:   UUID | None = Field(None, description="Required for sync_type=file")


class SyncAcceptedResponse(BaseModel):
    sync_job_id: UUID
    status:      SyncStatus = SyncStatus.PENDING


class SyncJobResponse(BaseModel):
    id:              UUID
    organization_id: UUID
    sync_type:       SyncType
    status:          SyncStatus
    triggered_by:    str
    file_id:         UUID | None = None
    files_total:     int
    files_processed: int
    error_code:      str | None = None
    error_message:   str | None = None
    created_at:      datetime | None = None
    started_at:      datetime | None = None
    completed_at:    datetime | None = None

    model_config = {"from_attributes": True}


class ExtractionJobResponse(BaseModel):
    id:              UUID
    file_id:         UUID
    organization_id: UUID
    method:          ExtractionMethod
    priority:        int
    status:          JobStatus
    retry_count:     int
    max_retries:     int
    error_code:      str | None = None
    error_message:   str | None = None
    created_at:      datetime | None = None
    started_at:      datetime | None = None
    completed_at:    datetime | None = None

    model_config = {"from_attributes": True}


class IndexStatusResponse(BaseModel):
    file_id:         UUID
    status:          IndexState
    retry_count:     int
    last_error:      str | None = None
    last_indexed_at: datetime | None = None
    updated_at:      datetime | None = None

    model_config = {"from_attributes": True}


class HealthResponse(BaseModel):
    status:  str = Field(..., description="healthy | degraded | unhealthy")
    details: dict[str, Any] = Field(default_factory=dict)
