from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Response
from sqlalchemy import text

from ticketpulse.config import settings
from ticketpulse.database import async_session_factory, engine
from ticketpulse.logging_config import configure_logging
from ticketpulse.routers import jobs, retention, snapshots
from ticketpulse.services.helpdesk_client import HelpdeskClient, validate_required_config
from ticketpulse.services.retention import RetentionEngine
from ticketpulse.services.secure_config import SecureConfigStore
from ticketpulse.services.snapshot_writer import SnapshotWriter
from ticketpulse.worker.scheduler import build_job_scheduler

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure structured logging before anything else
    configure_logging()

    config_store = SecureConfigStore(async_session_factory)
    # Missing helpdesk credentials abort startup with ConfigurationError
    await validate_required_config(config_store)

    helpdesk = HelpdeskClient(config_store)
    app.state.config_store = config_store
    app.state.helpdesk = helpdesk
    app.state.retention_engine = RetentionEngine(async_session_factory)
    app.state.snapshot_writer = SnapshotWriter(async_session_factory)
    app.state.scheduler = build_job_scheduler(async_session_factory, config_store, helpdesk)

    if settings.scheduler_enabled:
        app.state.scheduler.start()
    else:
        log.info("scheduler_disabled")

    try:
        yield
    finally:
        app.state.scheduler.stop()
        # in-flight runs still need the engine to finish their ledger rows
        await app.state.scheduler.drain()
        await helpdesk.close()
        await engine.dispose()


app = FastAPI(title=f"{settings.app_name} API", version="0.1.0", lifespan=lifespan)

app.include_router(jobs.router)
app.include_router(retention.router)
app.include_router(snapshots.router)


@app.get("/health")
async def health_check(response: Response):
    """Health check: database connectivity and scheduler state.

    Returns 200 if all components are healthy, 503 otherwise. A scheduler
    switched off by configuration counts as healthy.
    """
    checks = {}
    overall_healthy = True

    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
        checks["database"] = {"status": "healthy"}
    except Exception as e:
        checks["database"] = {"status": "unhealthy", "error": str(e)}
        overall_healthy = False

    try:
        scheduler = app.state.scheduler
        if not settings.scheduler_enabled:
            checks["scheduler"] = {"status": "healthy", "detail": "disabled"}
        elif scheduler.is_running():
            checks["scheduler"] = {
                "status": "healthy",
                "running_jobs": [n for n in scheduler.job_names if scheduler.is_job_running(n)],
            }
        else:
            checks["scheduler"] = {"status": "unhealthy", "error": "Scheduler stopped"}
            overall_healthy = False
    except AttributeError:
        checks["scheduler"] = {"status": "unhealthy", "error": "Scheduler not initialized"}
        overall_healthy = False

    response.status_code = 200 if overall_healthy else 503
    return {"status": "healthy" if overall_healthy else "unhealthy", "checks": checks}
