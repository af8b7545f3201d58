"""
FastAPI Application — Entry Point

Content processing service: content-addressed uploads, derived artifacts,
and the owner-entity processing lifecycle.

Architecture:
  - HTTP tier (this app) stores originals and enqueues ledger jobs
  - Worker tier (Celery, processor.workers) claims and executes jobs
  - Both share one object graph built by processor.services.runtime

Middleware stack:
  1. GZip: compress JSON responses > 1 KB
  2. Request ID + logging: X-Request-ID on every response, one log line per request

Error bodies share one envelope {error_code, message, details[], request_id}:
  ProcessorError       → status from HTTP_STATUS_BY_ERROR
  HTTPException        → the ErrorResponse carried in detail, unwrapped
  RequestValidation    → 422
  anything else        → 500, no stack trace in the body
"""

from __future__ import annotations

import logging
import resource
import sys
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from processor.api.cache import router as cache_router
from processor.api.dependencies import get_app_runtime
from processor.api.jobs import router as jobs_router
from processor.api.upload import router as upload_router
from processor.core.config import settings
from processor.core.errors import (
    FileTooLargeError,
    JobStateError,
    NotFoundError,
    ProcessorError,
    QueueFullError,
    StorageFullError,
    UnsupportedMediaTypeError,
    ValidationError,
)
from processor.db.session import check_db_health, create_tables
from processor.schemas.processing import (
    ErrorDetail,
    ErrorResponse,
    HealthResponse,
    MemoryUsage,
    UploadErrors,
)
from processor.services.runtime import Runtime

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_STARTED_AT = time.monotonic()

# Most specific first; the first isinstance match wins.
HTTP_STATUS_BY_ERROR: list[tuple[type[ProcessorError], int]] = [
    (FileTooLargeError,         status.HTTP_413_REQUEST_ENTITY_TOO_LARGE),
    (UnsupportedMediaTypeError, status.HTTP_415_UNSUPPORTED_MEDIA_TYPE),
    (ValidationError,           status.HTTP_400_BAD_REQUEST),
    (NotFoundError,             status.HTTP_404_NOT_FOUND),
    (JobStateError,             status.HTTP_409_CONFLICT),
    (QueueFullError,            status.HTTP_503_SERVICE_UNAVAILABLE),
    (StorageFullError,          status.HTTP_507_INSUFFICIENT_STORAGE),
]


def status_for(exc: ProcessorError) -> int:
    for error_type, code in HTTP_STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def max_rss_bytes() -> int:
    # ru_maxrss is KiB on Linux, bytes on macOS
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    return rss if sys.platform == "darwin" else rss * 1024


# ---------------------------------------------------------------------------
# Application lifespan — startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = get_app_runtime()
    logger.info(
        "Starting content processor | env=%s files=%s cache=%s ocr=%s",
        settings.app_env, settings.files_path, settings.cache_path, settings.ocr_enabled,
    )
    runtime.initialize_storage()

    if not settings.is_production:
        await create_tables(runtime.engine)

    db_health = await check_db_health(runtime.engine)
    if db_health["status"] != "ok":
        logger.critical("Database health check failed at startup: %s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")
    logger.info("Database: connected")

    yield

    logger.info("Shutting down content processor")
    await runtime.engine.dispose()


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

def create_app() -> FastAPI:
    app = FastAPI(
        title="Content Processor",
        description=(
            "Content-addressed file storage with asynchronous classification, "
            "text extraction, OCR and image preset rendering."
        ),
        version="1.0.0",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url=None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )

    app.add_middleware(GZipMiddleware, minimum_size=1024)

    # ----------------------------------------------------------------
    # Request ID + structured logging middleware
    # ----------------------------------------------------------------

    @app.middleware("http")
    async def request_id_and_logging(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "HTTP %s %s %d %.1fms | trace=%s",
            request.method,
            request.url.path,
            response.status_code,
            duration_ms,
            request.headers.get("X-Trace-ID", "-"),
        )
        return response

    # ----------------------------------------------------------------
    # Exception handlers — uniform structured error responses
    # ----------------------------------------------------------------

    def _request_id(request: Request) -> str | None:
        return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")

    @app.exception_handler(ProcessorError)
    async def processor_error_handler(request: Request, exc: ProcessorError):
        status_code = status_for(exc)
        log = logger.error if status_code >= 500 else logger.info
        log("Request rejected | path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        body = UploadErrors.from_processor_error(exc, request_id=_request_id(request))
        return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail
        if isinstance(detail, dict) and "error_code" in detail:
            body = ErrorResponse.model_validate({**detail, "request_id": _request_id(request)})
        else:
            body = ErrorResponse(
                error_code="HTTP_ERROR",
                message=str(detail),
                request_id=_request_id(request),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(mode="json"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic/FastAPI validation errors to structured ErrorResponse."""
        details = [
            ErrorDetail(
                field=".".join(str(loc) for loc in err["loc"]),
                message=err["msg"],
                code="VALIDATION_ERROR",
            )
            for err in exc.errors()
        ]
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=details,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """Catch-all for unhandled exceptions — never expose stack traces."""
        request_id = _request_id(request) or str(uuid.uuid4())
        logger.exception(
            "Unhandled exception | path=%s request_id=%s",
            request.url.path, request_id,
        )
        body = UploadErrors.internal_error(request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )

    # ----------------------------------------------------------------
    # Routers
    # ----------------------------------------------------------------

    app.include_router(upload_router)
    app.include_router(jobs_router)
    app.include_router(cache_router)

    # ----------------------------------------------------------------
    # Health & readiness endpoints (used by the load balancer)
    # ----------------------------------------------------------------

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Operations"],
        summary="Liveness check",
        description="Process uptime, peak memory and the ledger's queue depth.",
    )
    async def health(runtime: Runtime = Depends(get_app_runtime)) -> HealthResponse:
        try:
            depth = await runtime.queue.depth()
            counts = await runtime.queue.counts_by_state()
            health_status = "ok"
        except SQLAlchemyError as exc:
            logger.warning("Health: ledger unavailable | error=%s", exc)
            depth, counts, health_status = None, {}, "degraded"

        return HealthResponse(
            status=health_status,
            service=runtime.settings.service_name,
            uptime=round(time.monotonic() - _STARTED_AT, 3),
            memory=MemoryUsage(max_rss_bytes=max_rss_bytes()),
            queue_depth=depth,
            jobs=counts,
        )

    @app.get(
        "/ready",
        tags=["Operations"],
        summary="Readiness check",
        description="Returns 200 only if the database is reachable.",
    )
    async def readiness(runtime: Runtime = Depends(get_app_runtime)) -> JSONResponse:
        db_status = await check_db_health(runtime.engine)
        if db_status["status"] != "ok":
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "not_ready", "database": db_status},
            )
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": db_status},
        )

    return app


# ---------------------------------------------------------------------------
# Application instance (imported by uvicorn)
# ---------------------------------------------------------------------------

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "processor.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.app_env == "development",
        log_level="debug" if settings.debug else "info",
        access_log=True,
    )
