"""
FastAPI Application — Entry Point

Multi-tenant document ingestion pipeline.

Architecture:
  - All routes are versioned under /api/v1/
  - The pipeline graph (storage manager, extraction service, index
    synchronizer, job queue, background processor) is built once in the
    lifespan and shared through app.state
  - The background processor runs in the API process unless
    RUN_PROCESSOR_IN_API=false (dedicated worker deployment)
  - Pipeline exceptions are rendered as structured ErrorResponse bodies

Middleware stack (innermost → outermost):
  1. CORS — restrict to configured origins
  2. Request ID injection — X-Request-ID header on every response
  3. Gzip — compress responses > 1 KB
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from doclib.api.v1.files import router as files_router
from doclib.api.v1.ops import router as ops_router
from doclib.core.config import settings
from doclib.core.errors import PipelineError, error_code
from doclib.db.session import check_db_health
from doclib.schemas.pipeline import ErrorDetail, ErrorResponse, status_for_error
from doclib.services.container import build_pipeline

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting ingestion pipeline | env=%s storage=%s search=%s",
        settings.app_env, settings.default_storage_type, settings.search_url,
    )

    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    pipeline = build_pipeline(settings)
    app.state.pipeline = pipeline
    if settings.run_processor_in_api:
        await pipeline.processor.start()

    yield

    logger.info("Shutting down ingestion pipeline")
    await pipeline.close()
    from doclib.db.session import engine
    await engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Multi-Tenant Document Ingestion Pipeline",
        description=(
            "Hybrid object/local storage with background sync, strategy-based text "
            "extraction on a priority job queue, and search index synchronization."
        ),
        version="1.0.0",
        docs_url="/api/docs" if not settings.is_production else None,
        redoc_url="/api/redoc" if not settings.is_production else None,
        openapi_url="/api/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Organization-ID"],
        expose_headers=["X-Request-ID"],
    )

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s %d %.1fms | org=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-Organization-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError):
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error("Pipeline error | path=%s code=%s error=%s", request.url.path, error_code(exc), exc)
        body = ErrorResponse(
            error_code=error_code(exc),
            message=str(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            ErrorDetail(
                field=" → ".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    app.include_router(files_router, prefix="/api/v1")
    app.include_router(ops_router,   prefix="/api/v1")

    # ----------------------------------------------------------------
    # Health endpoints (no auth — used by load balancer)
    # ----------------------------------------------------------------

    @app.get("/health", tags=["Operations"], summary="Liveness probe")
    async def health() -> dict:
        return {"status": "ok", "service": "doclib-pipeline"}

    @app.get("/ready", tags=["Operations"], summary="Readiness probe with component status")
    async def readiness(request: Request) -> JSONResponse:
        pipeline = request.app.state.pipeline
        db_status, storage_status, processor_status, search_status = await asyncio.gather(
            check_db_health(),
            pipeline.storage.health_check(),
            pipeline.processor.health_check(),
            pipeline.search.health_check(),
        )

        # Search degradation does not block ingestion
        ready = (
            db_status["status"] == "ok"
            and processor_status["queue_reachable"]
            and any(s.get("status") == "ok" for s in storage_status.values())
        )
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "ready" if ready else "not_ready",
                "database": db_status,
                "storage": storage_status,
                "queue": processor_status,
                "search": search_status,
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "doclib.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
