"""OrphanedEvent ORM model — events waiting for their enrollment to appear."""
import uuid
from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, UniqueConstraint, Index
from outreach_events.database import Base


class OrphanedEvent(Base):
    __tablename__ = "orphaned_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False)
    enrollment_key = Column(String(255), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    raw_payload_ref = Column(String(64), nullable=False)
    raw_payload = Column(JSON, nullable=False, default=dict)
    enqueued_at = Column(DateTime(timezone=True), nullable=False)
    next_retry_at = Column(DateTime(timezone=True), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_orphaned_events_provider_event"),
        Index("ix_orphaned_events_next_retry_at", "next_retry_at"),
    )
