"""
FastAPI application main module.

Operational surface of the ingestion service: health, queue inspection and
the scheduler-triggered endpoints that feed the job queues. Queue workers
run in-process and are started by the lifespan handler.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import uuid
import os
from contextlib import asynccontextmanager
from typing import Any, Optional
from creator_ingest.api.v1 import api_router
from creator_ingest.utils import bind_log_context, setup_logging, get_logger
from creator_ingest.database import engine, Base, SessionLocal
from creator_ingest.config import WORKER_SETTINGS
from creator_ingest.jobs.job import QueueUnavailableError
from creator_ingest.resources import Resources, build_resources
import creator_ingest.models.db  # noqa: F401  (register mappers before create_all)

setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/ingest.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "creator-ingest"
VERSION = "1.0.0"
REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, build shared resources and start the queue workers."""
    resources: Optional[Resources] = None
    try:
        Base.metadata.create_all(bind=engine)
        resources = build_resources(SessionLocal)
        app.state.resources = resources  # type: ignore[attr-defined]
        if WORKER_SETTINGS.get("enabled", True):
            resources.start_workers()
        else:
            logger.info("Queue workers disabled by configuration")
        logger.info("Ingestion service started", backend=resources.backend.name, workers=sorted(resources.workers))
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Ingestion service startup failed", error=str(e), exc_info=True)
        raise
    finally:
        if resources is not None:
            resources.close()
        logger.info("Ingestion service stopped")


app = FastAPI(
    title="Creator Content Ingestion",
    description="""
    Asynchronous content ingestion for tracked creators.

    ## Features
    * **Job queues** - deduplicated, staggered, leased jobs with stall recovery
    * **Multi-platform collection** - RSS, YouTube, Twitter/X, Threads, LinkedIn
    * **Two-phase snapshots** - trigger now, poll and collect later
    * **Idempotent reconciliation** - create / update / skip per natural key

    ## Authentication
    Mutating operational endpoints require the scheduler secret when configured:
    ```
    Authorization: Bearer <CRON_SECRET>
    ```
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Assign a request id, bind it to the log context and time the request."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    started = time.perf_counter()

    with bind_log_context(request_id=request_id):
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Process-Time"] = str(elapsed_ms)
        # Health checks are frequent; keep them at debug
        log = logger.debug if request.url.path.startswith("/health") else logger.info
        log(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time_ms=elapsed_ms,
        )
    return response


def _error_response(request: Request, status_code: int, message: Any, headers: Optional[dict] = None, **extra) -> JSONResponse:
    content = {"success": False, "message": message, **extra}
    content["request_id"] = getattr(request.state, "request_id", "unknown")
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation failed", errors=exc.errors(), path=request.url.path)
    return _error_response(request, 422, "Request validation failed", details=jsonable_encoder(exc.errors()))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("HTTP error", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
    else:
        logger.warning("HTTP error", status_code=exc.status_code, detail=exc.detail, path=request.url.path)
    return _error_response(request, exc.status_code, exc.detail, headers=getattr(exc, "headers", None))


@app.exception_handler(QueueUnavailableError)
async def queue_unavailable_handler(request: Request, exc: QueueUnavailableError):
    logger.error("Job store unavailable", error=str(exc), path=request.url.path)
    return _error_response(request, 503, "Job store unavailable")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


def _resources() -> Optional[Resources]:
    return getattr(app.state, "resources", None)


def _check_database(resources: Optional[Resources]) -> str:
    session_factory = resources.session_factory if resources is not None else SessionLocal
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Database health check failed", error=str(e))
        return f"unhealthy: {e}"
    return "healthy"


def _check_job_store(resources: Resources) -> dict:
    try:
        healthy = resources.backend.ping()
    except Exception as e:  # pragma: no cover
        logger.warning("Job store ping failed", error=str(e))
        healthy = False
    return {"backend": resources.backend.name, "status": "healthy" if healthy else "unavailable"}


@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check():
    """Liveness check; reports which job store backend is in use."""
    resources = _resources()
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "queue_backend": resources.backend.name if resources is not None else None,
    }


@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check():
    """Database, job store, per-queue counts and running workers."""
    resources = _resources()
    checks: dict[str, Any] = {"database": _check_database(resources)}
    degraded = checks["database"] != "healthy"

    if resources is None:
        checks["job_store"] = "not initialized"
        degraded = True
    else:
        checks["job_store"] = _check_job_store(resources)
        degraded = degraded or checks["job_store"]["status"] != "healthy"
        stats = resources.manager.get_stats(use_cache=True)
        checks["queues"] = {
            name: {"total": counts.get("total", 0), "failed": counts.get("failed", 0), "error": counts.get("error", False)}
            for name, counts in stats.items() if name != "_meta"
        }
        checks["workers"] = sorted(resources.workers)

    return {
        "status": "degraded" if degraded else "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Creator Content Ingestion API",
        "version": VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }


app.include_router(api_router, prefix="/api/v1")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "creator_ingest.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["creator_ingest"],
        log_level="info",
        access_log=True
    )
