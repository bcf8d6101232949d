"""DeadLetterEvent ORM model — events that could not be resolved.

Stores enough of the original event (including the raw payload) to rebuild
it for replay. ``provider_event_id`` and friends are nullable because
malformed payloads never produced a canonical event.
"""
import uuid
import enum
from sqlalchemy import Column, String, DateTime, Integer, Text, JSON, Index, Enum as SAEnum
from sqlalchemy.sql import func
from outreach_events.database import Base


class DeadLetterStatus(str, enum.Enum):
    failed = "failed"
    replaying = "replaying"
    replayed = "replayed"
    ignored = "ignored"


class DeadLetterEvent(Base):
    __tablename__ = "dead_letter_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), nullable=False)
    provider_event_id = Column(String(255), nullable=True)
    event_type = Column(String(50), nullable=True)
    channel = Column(String(20), nullable=True)
    enrollment_key = Column(String(255), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    raw_payload_ref = Column(String(64), nullable=False)
    raw_payload = Column(JSON, nullable=False, default=dict)
    failure_reason = Column(Text, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    status = Column(SAEnum(DeadLetterStatus), nullable=False, default=DeadLetterStatus.failed)
    first_attempted_at = Column(DateTime(timezone=True), nullable=False)
    last_attempted_at = Column(DateTime(timezone=True), nullable=False)
    replayed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_dead_letter_events_status", "status"),
        Index("ix_dead_letter_events_provider", "provider"),
        Index("ix_dead_letter_events_event_type", "event_type"),
        Index("ix_dead_letter_events_created_at", "created_at"),
    )
