"""CampaignEvent ORM model — the durable event log.

The unique (provider, provider_event_id) constraint is what makes webhook
processing idempotent: a second insert of the same pair fails in the database,
no matter how many workers race on it.
"""
import uuid
from sqlalchemy import Column, String, DateTime, Boolean, JSON, UniqueConstraint, Index
from sqlalchemy.sql import func
from outreach_events.database import Base


class CampaignEvent(Base):
    __tablename__ = "campaign_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    provider = Column(String(50), nullable=False)
    provider_event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    channel = Column(String(20), nullable=False)
    enrollment_key = Column(String(255), nullable=False)
    enrollment_id = Column(String(64), nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=True)
    raw_payload_ref = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    status_advanced = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_campaign_events_provider_event"),
        Index("ix_campaign_events_enrollment_id", "enrollment_id"),
        Index("ix_campaign_events_enrollment_type", "enrollment_id", "event_type"),
    )
