"""
File API Router
POST   /api/v1/files                    upload (multipart)
DELETE /api/v1/files/{file_id}          delete all copies + index entry
GET    /api/v1/files/{file_id}/download short-lived download link
GET    /api/v1/files/{file_id}/index-status search index status

Upload status codes:
  201  stored; extraction inline-completed or queued
  413  larger than the organization's limit
  415  mime type not allowed by the organization's policy
  507  organization storage quota exhausted
  503  primary storage backend unavailable
"""

from __future__ import annotations

import json
import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, File, Form, HTTPException, Query, UploadFile, status

from doclib.api.dependencies import OrganizationId, PipelineDep
from doclib.models.records import Visibility
from doclib.schemas.pipeline import (
    DownloadLinkResponse,
    ErrorResponse,
    ExtractionPlanResponse,
    IndexStatusResponse,
    UploadResponse,
)
from doclib.search.synchronizer import parse_tags

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/files", tags=["Files"])

_ERRORS = {
    404: {"model": ErrorResponse},
    413: {"model": ErrorResponse},
    415: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
    507: {"model": ErrorResponse},
}


@router.post(
    "",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a file into the ingestion pipeline",
    responses=_ERRORS,
)
async def upload_file(
    pipeline: PipelineDep,
    organization_id: OrganizationId,
    file: UploadFile = File(...),
    title: Optional[str] = Form(None, max_length=500),
    author: Optional[str] = Form(None, max_length=255),
    department: Optional[str] = Form(None, max_length=255),
    tags: Optional[str] = Form(None, description="JSON array or comma-separated list"),
    folder_id: Optional[UUID] = Form(None),
    visibility: Visibility = Form(Visibility.PRIVATE),
    metadata: Optional[str] = Form(None, description="JSON object"),
    force_sync: bool = Form(False),
    request_ai: bool = Form(False),
) -> UploadResponse:
    extra: dict | None = None
    if metadata:
        try:
            extra = json.loads(metadata)
        except json.JSONDecodeError:
            extra = None
        if not isinstance(extra, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=ErrorResponse(
                    error_code="INVALID_METADATA",
                    message="metadata must be a JSON object string.",
                ).model_dump(),
            )

    data = await file.read()
    outcome = await pipeline.ingestion.upload(
        organization_id,
        data,
        file.filename or "upload",
        file.content_type or "application/octet-stream",
        folder_id=folder_id,
        metadata=extra,
        title=title,
        author=author,
        department=department,
        tags=parse_tags(tags),
        visibility=visibility,
        force_sync=force_sync,
        request_ai=request_ai,
    )
    return UploadResponse(
        file_id=outcome.file_id,
        job_id=outcome.job_id,
        extraction_status=outcome.extraction_status,
        processed_inline=outcome.processed_inline,
        backup_deferred=outcome.backup_deferred,
        sync_job_id=outcome.sync_job_id,
        plan=ExtractionPlanResponse(
            method=outcome.plan.method,
            priority=outcome.plan.priority,
            use_async=outcome.plan.use_async,
            estimated_duration_ms=outcome.plan.estimated_duration_ms,
        ),
    )


@router.delete(
    "/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a file, its copies and its index entry",
    responses=_ERRORS,
)
async def delete_file(
    file_id: UUID,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
) -> None:
    await pipeline.ingestion.delete(organization_id, file_id)


@router.get(
    "/{file_id}/download",
    response_model=DownloadLinkResponse,
    summary="Short-lived download link for the primary copy",
    responses=_ERRORS,
)
async def download_link(
    file_id: UUID,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
    ttl_seconds: int = Query(900, ge=60, le=86_400),
) -> DownloadLinkResponse:
    url = await pipeline.ingestion.download_url(organization_id, file_id, ttl_seconds)
    return DownloadLinkResponse(file_id=file_id, url=url, ttl_seconds=ttl_seconds)


@router.get(
    "/{file_id}/index-status",
    response_model=IndexStatusResponse,
    summary="Search index status of a file",
    responses={404: {"model": ErrorResponse}},
)
async def index_status(
    file_id: UUID,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
) -> IndexStatusResponse:
    record = await pipeline.search.get_status(file_id)
    if record is None or record.organization_id != organization_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(
                error_code="NOT_FOUND",
                message=f"File {file_id} not found",
            ).model_dump(),
        )
    return IndexStatusResponse.model_validate(record)
