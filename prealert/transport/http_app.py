# prealert/transport/http_app.py
"""
HTTP application.

- Inbound email webhook that starts workflow instances
- Read-only alert query API
- Health, metrics and workflow status endpoints

The workflow worker runs inside this process when RUN_MODE is
``all`` or ``worker``.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from prealert.config import settings
from prealert.core.engine import WorkflowEngine
from prealert.core.workflow import AlertWorkflow
from prealert.infra.db_async import close_pool, init_pool, ping
from prealert.infra.logging_config import setup_logging, get_logger
from prealert.infra.metrics import get_metrics_collector
from prealert.infra.openai_speech import get_audio_synthesizer, get_narration_generator
from prealert.infra.pg_alert_repo_async import get_alert_repo, get_org_repo
from prealert.infra.pg_workflow_repo_async import get_workflow_store
from prealert.infra.s3_storage import get_audio_storage, is_s3_available
from prealert.infra.workflow_worker import WorkflowWorker
from prealert.transport.api import router as api_router
from prealert.transport.email_webhook import router as email_router
from prealert.transport.middleware import RequestIDMiddleware, RequestLoggingMiddleware
from prealert.transport.security import require_admin_auth

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production,
    static_fields={"service": "prealert", "env": settings.app_env, "run_mode": settings.run_mode},
)

logger = get_logger(__name__)


def build_engine(*, orgs, alerts, audio_store, store) -> WorkflowEngine:
    """Wire the alert workflow and engine from settings."""
    workflow = AlertWorkflow(
        orgs=orgs,
        alerts=alerts,
        audio_store=audio_store,
        narrator=get_narration_generator(),
        synthesizer=get_audio_synthesizer(),
        narration_mode=settings.narration_mode,
    )
    return WorkflowEngine(
        store,
        workflow,
        max_attempts=settings.workflow_max_attempts,
        base_retry_delay=settings.workflow_base_retry_delay,
        max_retry_delay=settings.workflow_max_retry_delay,
    )


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    logger.info(
        f"Starting application: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    if not is_s3_available():
        logger.critical(
            "S3 storage is not configured. "
            "Set S3_ENDPOINT_URL, S3_ACCESS_KEY, S3_SECRET_KEY, S3_BUCKET_NAME."
        )
        raise RuntimeError("S3 storage not configured")

    await init_pool()
    logger.info("Database pool initialized")

    fastapi_app.state.orgs = get_org_repo()
    fastapi_app.state.alerts = get_alert_repo()
    fastapi_app.state.audio_store = get_audio_storage()
    fastapi_app.state.workflow_store = get_workflow_store()
    fastapi_app.state.engine = build_engine(
        orgs=fastapi_app.state.orgs,
        alerts=fastapi_app.state.alerts,
        audio_store=fastapi_app.state.audio_store,
        store=fastapi_app.state.workflow_store,
    )

    worker = None
    if settings.run_mode in ("all", "worker") and settings.workflow_worker_enabled:
        worker = WorkflowWorker(
            fastapi_app.state.engine,
            poll_interval=settings.workflow_poll_interval,
            batch_size=settings.workflow_batch_size,
            stale_timeout=settings.workflow_stale_timeout,
            release_delay=settings.workflow_base_retry_delay,
        )
        await worker.start()
    else:
        logger.info(
            f"Workflow worker skipped (run_mode={settings.run_mode}, "
            f"enabled={settings.workflow_worker_enabled})"
        )

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application")
    if worker is not None:
        await worker.stop()
    await close_pool()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Pre-Alert Pipeline",
    description="Dispatch pre-alert email → narration → audio → alert",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)

app.include_router(email_router)
app.include_router(api_router)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    message = "Internal server error" if settings.is_production else f"{exc.__class__.__name__}: {exc}"
    return JSONResponse(status_code=500, content={"error": message})


@app.get("/health")
def health():
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: the database answers."""
    if not await ping():
        return JSONResponse(status_code=503, content={"status": "unhealthy"})
    return {"status": "healthy"}


@app.get("/metrics")
def metrics():
    if not settings.enable_metrics:
        raise HTTPException(status_code=404, detail="Not found")
    return get_metrics_collector().get_metrics()


@app.get("/admin/workflows", dependencies=[Depends(require_admin_auth)])
async def workflow_status(request: Request):
    """Instance counts by status."""
    counts = await request.app.state.workflow_store.count_by_status()
    return {"instances": counts}
