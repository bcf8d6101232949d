"""Pipeline wiring and the FastAPI dependency that hands it to routes."""
import random
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from outreach_events.clock import Clock, utcnow
from outreach_events.config import Settings
from outreach_events.services.dead_letter_store import DeadLetterStore
from outreach_events.services.event_pipeline import EventPipeline
from outreach_events.services.metrics import InMemoryMetrics, MetricsSink
from outreach_events.services.orphaned_queue import OrphanedEventQueue, RetryPolicy


@dataclass
class Components:
    pipeline: EventPipeline
    queue: OrphanedEventQueue
    dead_letters: DeadLetterStore
    metrics: MetricsSink


def build_pipeline(
    session_factory: sessionmaker,
    settings: Settings,
    metrics: Optional[MetricsSink] = None,
    clock: Clock = utcnow,
    rng: Optional[random.Random] = None,
) -> Components:
    """Create the pipeline, orphaned queue and dead letter store sharing one
    session factory, metrics sink and clock."""
    metrics = metrics or InMemoryMetrics()
    dead_letters = DeadLetterStore(
        session_factory,
        metrics=metrics,
        clock=clock,
        retention_days=settings.DEAD_LETTER_RETENTION_DAYS,
        max_page_size=settings.DEAD_LETTER_MAX_PAGE_SIZE,
        replay_lease_seconds=settings.DEAD_LETTER_REPLAY_LEASE_SECONDS,
    )
    pipeline = EventPipeline(session_factory, metrics=metrics, clock=clock)
    queue = OrphanedEventQueue(
        session_factory,
        processor=pipeline.process,
        dead_letters=dead_letters,
        policy=RetryPolicy.from_settings(settings, rng=rng),
        batch_size=settings.ORPHAN_BATCH_SIZE,
        max_size=settings.ORPHAN_MAX_QUEUE_SIZE,
        stale_after_seconds=settings.ORPHAN_STALE_AFTER_SECONDS,
        metrics=metrics,
        clock=clock,
    )
    pipeline.queue = queue
    pipeline.dead_letters = dead_letters
    return Components(pipeline=pipeline, queue=queue, dead_letters=dead_letters, metrics=metrics)


def get_components(request: Request) -> Components:
    return request.app.state.components
