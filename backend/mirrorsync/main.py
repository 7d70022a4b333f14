import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mirrorsync.config import settings
from mirrorsync.database import engine, init_db
from mirrorsync.routers.auto_backup import router as auto_backup_router
from mirrorsync.routers.backup import router as backup_router
from mirrorsync.routers.comparison import router as comparison_router
from mirrorsync.routers.sources import router as sources_router
from mirrorsync.routers.upload import router as upload_router
from mirrorsync.seed import seed_backends
from mirrorsync.services import job_tracker
from mirrorsync.services.auto_backup import AutoBackupScheduler
from mirrorsync.services.job_runner import JobRunner

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    await seed_backends()
    # Jobs a previous process was running will never finish
    await job_tracker.mark_interrupted()

    app.state.job_runner = JobRunner()
    scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)
    scheduler.add_job(
        job_tracker.sweep_expired,
        "interval",
        hours=settings.job_sweep_interval_hours,
        args=[settings.job_retention_days],
        id="job_retention_sweep",
        next_run_time=datetime.now(timezone.utc),
    )
    app.state.auto_backup = AutoBackupScheduler(scheduler, app.state.job_runner)
    app.state.auto_backup.start()
    scheduler.start()
    logger.info(
        "Scheduler started: job retention %d days, sweep every %d hours",
        settings.job_retention_days,
        settings.job_sweep_interval_hours,
    )

    yield

    scheduler.shutdown(wait=False)
    await app.state.job_runner.shutdown()
    await engine.dispose()
    logger.info("Mirror database engine disposed")


app = FastAPI(title="Mirrorsync API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(backup_router, prefix="/api")
app.include_router(upload_router, prefix="/api")
app.include_router(comparison_router, prefix="/api")
app.include_router(sources_router, prefix="/api")
app.include_router(auto_backup_router, prefix="/api")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/health")
async def api_health() -> dict:
    return {"status": "ok", "activeJobs": len(app.state.job_runner.active_jobs)}
