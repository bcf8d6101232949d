"""Pytest fixtures — per-test SQLite file database in WAL mode."""
import os
import random
import uuid
from datetime import datetime, timedelta, timezone

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from outreach_events.config import Settings
from outreach_events.database import Base, get_db, make_engine
from outreach_events.dependencies import build_pipeline, get_components
from outreach_events.main import app
from outreach_events.models.enrollment import Enrollment, EnrollmentStatus, STATUS_RANK
from outreach_events.schemas.event import CanonicalEvent
from outreach_events.services.metrics import InMemoryMetrics
from outreach_events.services.normalizer import payload_digest

# Import all models so they register with Base.metadata
from outreach_events.models.campaign_event import CampaignEvent        # noqa: F401
from outreach_events.models.orphaned_event import OrphanedEvent        # noqa: F401
from outreach_events.models.dead_letter_event import DeadLetterEvent   # noqa: F401

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture(scope="function")
def db_engine(tmp_path):
    """Fresh SQLite file per test; concurrency tests need a real file."""
    engine = make_engine(f"sqlite:///{tmp_path / 'events.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db(session_factory):
    """Yield a database session for setup and assertions."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def settings():
    """Default retry schedule without jitter, so delays are exact."""
    return Settings(ORPHAN_JITTER_SECONDS=0.0, SCHEDULER_ENABLED=False)


@pytest.fixture(scope="function")
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def metrics():
    return InMemoryMetrics()


@pytest.fixture(scope="function")
def components(session_factory, settings, metrics, clock):
    return build_pipeline(session_factory, settings, metrics=metrics, clock=clock, rng=random.Random(7))


@pytest.fixture(scope="function")
def pipeline(components):
    return components.pipeline


@pytest.fixture(scope="function")
def client(session_factory, components):
    """FastAPI TestClient wired to the per-test database and pipeline."""

    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_components] = lambda: components
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def create_enrollment(
    db,
    enrollment_id: str | None = None,
    status: EnrollmentStatus = EnrollmentStatus.pending,
    provider_message_id: str | None = None,
    provider_action_id: str | None = None,
) -> Enrollment:
    """Insert and commit an enrollment row the way the enrollment workflow would."""
    enrollment = Enrollment(
        id=enrollment_id or f"enr_{uuid.uuid4().hex[:12]}",
        campaign_instance_id="cmp_spring_launch",
        contact_identifier="ada@example.com",
        provider_message_id=provider_message_id,
        provider_action_id=provider_action_id,
        status=status,
        status_rank=STATUS_RANK[status],
    )
    db.add(enrollment)
    db.commit()
    db.refresh(enrollment)
    return enrollment


def reload_enrollment(db, enrollment_id: str) -> Enrollment:
    db.expire_all()
    return db.query(Enrollment).filter(Enrollment.id == enrollment_id).one()


def make_event(
    enrollment_key: str,
    event_type: str = "sent",
    provider_event_id: str | None = None,
    provider: str = "lemlist",
    channel: str = "email",
    occurred_at: datetime | None = T0,
) -> CanonicalEvent:
    payload = {
        "id": provider_event_id or f"evt_{uuid.uuid4().hex}",
        "event_type": event_type,
        "enrollment_id": enrollment_key,
    }
    return CanonicalEvent(
        provider=provider,
        provider_event_id=payload["id"],
        event_type=event_type,
        channel=channel,
        enrollment_key=enrollment_key,
        occurred_at=occurred_at,
        raw_payload_ref=payload_digest(payload),
        raw_payload=payload,
    )


def lemlist_payload(enrollment_id: str, event_name: str = "emailsSent", event_id: str | None = None) -> dict:
    return {
        "_id": event_id or f"lem_{uuid.uuid4().hex[:16]}",
        "type": event_name,
        "eventName": event_name,
        "eventDate": "2026-03-02T09:00:00.000Z",
        "Metadata": {"enrollment_id": enrollment_id},
    }


def is_recorded(db, provider: str, provider_event_id: str) -> bool:
    db.expire_all()
    return (
        db.query(CampaignEvent.id)
        .filter(CampaignEvent.provider == provider, CampaignEvent.provider_event_id == provider_event_id)
        .first()
        is not None
    )
