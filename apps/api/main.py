"""
Game Server Billing - FastAPI Backend
Lifecycle reconciliation trigger, rewards ledger reads and health checks.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, cron, ledger
from services.lifecycle_trigger import get_lifecycle_trigger

logger = logging.getLogger(__name__)


async def _periodic_lifecycle_reconciliation() -> None:
    interval_minutes = max(int(settings.LIFECYCLE_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    trigger = get_lifecycle_trigger()
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await trigger.run_once()
            if result.skipped:
                logger.info("Lifecycle tick skipped: previous pass still running")
                continue
            counts = result.summary.counts
            logger.info(
                "Lifecycle tick: backfilled=%s billed=%s suspended=%s deleted=%s errors=%s",
                counts["backfilled"],
                counts["billed"],
                counts["suspended"],
                counts["deleted"],
                result.summary.errors,
            )
        except Exception as exc:
            logger.exception("Lifecycle tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    logger.info("Starting Game Server Billing API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    lifecycle_task = None
    if int(settings.LIFECYCLE_INTERVAL_MINUTES) > 0:
        lifecycle_task = asyncio.create_task(_periodic_lifecycle_reconciliation())
        logger.info(
            "Lifecycle reconciliation loop enabled (every %s min).",
            int(settings.LIFECYCLE_INTERVAL_MINUTES),
        )
    yield
    # Shutdown
    if lifecycle_task is not None:
        lifecycle_task.cancel()
        try:
            await lifecycle_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API...")


app = FastAPI(
    title="Game Server Billing API",
    description="Recurring billing, suspension and deletion of provisioned game servers",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(cron.router, prefix="/cron", tags=["Cron"])
app.include_router(ledger.router, prefix="/ledger", tags=["Ledger"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Game Server Billing API",
        "version": "0.1.0",
        "status": "running"
    }
