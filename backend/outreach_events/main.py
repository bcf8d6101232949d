"""FastAPI application entry point."""
import logging

from fastapi import FastAPI

from outreach_events.config import settings
from outreach_events.database import Base, SessionLocal, engine
from outreach_events.dependencies import build_pipeline

# Import routers
from outreach_events.routers import admin, dead_letters, enrollments, webhooks
from outreach_events.services.scheduler import OrphanedQueueScheduler

# Import all models so Base.metadata knows about them
from outreach_events.models.enrollment import Enrollment  # noqa: F401
from outreach_events.models.campaign_event import CampaignEvent  # noqa: F401
from outreach_events.models.orphaned_event import OrphanedEvent  # noqa: F401
from outreach_events.models.dead_letter_event import DeadLetterEvent  # noqa: F401

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Outreach Events",
    description="Webhook event ingestion for outreach campaigns: dedup, monotonic status, orphan retry, dead letters",
    version="0.1.0",
)

app.state.components = build_pipeline(SessionLocal, settings)
app.state.scheduler = None

# Register routers
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])
app.include_router(enrollments.router, prefix="/api/enrollments", tags=["Enrollments"])
app.include_router(dead_letters.router, prefix="/api/admin/dead-letters", tags=["DeadLetters"])
app.include_router(admin.router, prefix="/api/admin", tags=["Admin"])


@app.on_event("startup")
async def on_startup():
    """Create database tables (SQLite dev mode) and start the orphaned queue scheduler."""
    if settings.DATABASE_URL.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
    if settings.SCHEDULER_ENABLED:
        components = app.state.components
        scheduler = OrphanedQueueScheduler(
            components.queue,
            interval=settings.ORPHAN_TICK_INTERVAL_SECONDS,
            dead_letters=components.dead_letters,
            drain_on_stop_seconds=settings.ORPHAN_DRAIN_ON_SHUTDOWN_SECONDS,
        )
        scheduler.start()
        app.state.scheduler = scheduler
    else:
        logger.info("Orphaned queue scheduler disabled")


@app.on_event("shutdown")
async def on_shutdown():
    scheduler = app.state.scheduler
    if scheduler is not None:
        await scheduler.stop()
        app.state.scheduler = None


@app.get("/api/health")
def health_check():
    return {"status": "ok"}
