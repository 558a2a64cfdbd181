"""
Operations API Router
Processor control, recovery sweep, extraction job lookup + reset, search
health + reindex, storage sync and usage. Mounted under /api/v1/ops; intended for the operator console, so it
sits behind the same gateway as the file routes.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from doclib.api.dependencies import OrganizationId, PipelineDep
from doclib.schemas.pipeline import (
    ErrorResponse,
    ExtractionJobResponse,
    HealthResponse,
    SyncAcceptedResponse,
    SyncJobResponse,
    SyncRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ops", tags=["Operations"])


# ---------------------------------------------------------------------------
# Background processor
# ---------------------------------------------------------------------------

@router.post("/processor/start", response_model=HealthResponse)
async def start_processor(pipeline: PipelineDep) -> HealthResponse:
    await pipeline.processor.start()
    report = await pipeline.processor.health_check()
    return HealthResponse(status=report["status"], details=report)


@router.post("/processor/stop", response_model=HealthResponse)
async def stop_processor(pipeline: PipelineDep) -> HealthResponse:
    await pipeline.processor.stop()
    report = await pipeline.processor.health_check()
    return HealthResponse(status=report["status"], details=report)


@router.get("/processor", response_model=HealthResponse)
async def processor_status(pipeline: PipelineDep) -> HealthResponse:
    report = await pipeline.processor.health_check()
    return HealthResponse(status=report["status"], details=report)


@router.post("/processor/recover", summary="Run one recovery sweep now")
async def recover_pending(pipeline: PipelineDep) -> dict:
    return await pipeline.processor.process_pending_database_jobs()


# ---------------------------------------------------------------------------
# Extraction jobs
# ---------------------------------------------------------------------------

def _job_not_found(job_id: UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=ErrorResponse(
            error_code="NOT_FOUND",
            message=f"Extraction job {job_id} not found",
        ).model_dump(),
    )


@router.get(
    "/extraction-jobs/{job_id}",
    response_model=ExtractionJobResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_extraction_job(
    job_id: UUID,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
) -> ExtractionJobResponse:
    job = await pipeline.extraction.get(job_id)
    if job is None or job.organization_id != organization_id:
        raise _job_not_found(job_id)
    return ExtractionJobResponse.model_validate(job)


@router.post(
    "/extraction-jobs/{job_id}/reset",
    response_model=ExtractionJobResponse,
    responses={404: {"model": ErrorResponse}},
)
async def reset_extraction_job(
    job_id: UUID,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
) -> ExtractionJobResponse:
    job = await pipeline.extraction.get(job_id)
    if job is None or job.organization_id != organization_id:
        raise _job_not_found(job_id)
    job = await pipeline.extraction.reset(job_id)
    return ExtractionJobResponse.model_validate(job)


# ---------------------------------------------------------------------------
# Search index
# ---------------------------------------------------------------------------

@router.get("/search/health", response_model=HealthResponse)
async def search_health(pipeline: PipelineDep) -> HealthResponse:
    report = await pipeline.search.health_check()
    return HealthResponse(status=report["status"], details=report)


@router.post("/search/reindex", summary="Re-index every live file of the organization")
async def reindex_organization(pipeline: PipelineDep, organization_id: OrganizationId) -> dict:
    return await pipeline.search.reindex_organization(organization_id)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@router.post(
    "/storage/sync",
    response_model=SyncAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def trigger_sync(
    body: SyncRequest,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
) -> SyncAcceptedResponse:
    try:
        sync_job_id = await pipeline.storage.sync_storage(
            organization_id, body.sync_type, body.file_id, triggered_by="api",
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=ErrorResponse(error_code="INVALID_SYNC_REQUEST", message=str(exc)).model_dump(),
        )
    return SyncAcceptedResponse(sync_job_id=sync_job_id)


@router.get(
    "/storage/sync/{sync_job_id}",
    response_model=SyncJobResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_sync_job(
    sync_job_id: UUID,
    pipeline: PipelineDep,
    organization_id: OrganizationId,
) -> SyncJobResponse:
    job = await pipeline.storage.get_sync_job(sync_job_id)
    if job is None or job.organization_id != organization_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(
                error_code="NOT_FOUND",
                message=f"Sync job {sync_job_id} not found",
            ).model_dump(),
        )
    return SyncJobResponse.model_validate(job)


@router.get("/storage/usage")
async def storage_usage(pipeline: PipelineDep, organization_id: OrganizationId) -> dict:
    return await pipeline.storage.usage(organization_id)
