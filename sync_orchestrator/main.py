"""
Ad & Commerce Sync Orchestrator
Main FastAPI application
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sync_orchestrator import __version__
from sync_orchestrator.api import health, sync
from sync_orchestrator.config import get_settings
from sync_orchestrator.utils.logger import log

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    try:
        from sync_orchestrator.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    workers = None
    if settings.run_workers:
        from sync_orchestrator.scheduler import start_scheduler
        from sync_orchestrator.services.orchestrator import get_orchestrator
        try:
            start_scheduler()
            workers = get_orchestrator().workers
            workers.start()
        except Exception as e:
            log.error(f"Worker/scheduler startup error: {str(e)}")

    yield

    if workers is not None:
        from sync_orchestrator.scheduler import stop_scheduler
        stop_scheduler()
        await workers.stop()
    log.info("Shutting down application")


app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Job queue, worker pool, backfill chunker, rate-limit fallback and ETL
    progress ledger for ads and commerce platform syncs.

    Sync and drain endpoints always answer 200: check `success` and the
    per-job `status` / `error` fields in the body.
    """,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["health"])
app.include_router(sync.router)
