"""Enrollment ORM model — a contact's progress through one campaign instance.

Rows are created by the external enrollment workflow. This service only
writes the status, rank, counter and last_event_at columns.
"""
import enum
from sqlalchemy import Column, String, DateTime, Integer, Index, Enum as SAEnum
from sqlalchemy.sql import func
from outreach_events.database import Base


class EnrollmentStatus(str, enum.Enum):
    pending = "pending"
    sent = "sent"
    delivered = "delivered"
    opened = "opened"
    clicked = "clicked"
    replied = "replied"
    completed = "completed"
    bounced = "bounced"
    unsubscribed = "unsubscribed"


STATUS_RANK: dict[EnrollmentStatus, int] = {
    EnrollmentStatus.pending: 1,
    EnrollmentStatus.sent: 2,
    EnrollmentStatus.delivered: 3,
    EnrollmentStatus.opened: 4,
    EnrollmentStatus.clicked: 5,
    EnrollmentStatus.replied: 6,
    EnrollmentStatus.completed: 6,
    EnrollmentStatus.bounced: 7,
    EnrollmentStatus.unsubscribed: 7,
}

TERMINAL_STATUSES = frozenset({EnrollmentStatus.bounced, EnrollmentStatus.unsubscribed})


class Enrollment(Base):
    __tablename__ = "campaign_enrollments"

    id = Column(String(64), primary_key=True)
    campaign_instance_id = Column(String(64), nullable=False, index=True)
    contact_identifier = Column(String(255), nullable=False)
    provider_message_id = Column(String(255), nullable=True)
    provider_action_id = Column(String(255), nullable=True)
    status = Column(SAEnum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.pending)
    # Always STATUS_RANK[status]; kept in the row so a forward-only transition is one conditional UPDATE.
    status_rank = Column(Integer, nullable=False, default=STATUS_RANK[EnrollmentStatus.pending])
    sent_count = Column(Integer, nullable=False, default=0)
    delivered_count = Column(Integer, nullable=False, default=0)
    opened_count = Column(Integer, nullable=False, default=0)
    clicked_count = Column(Integer, nullable=False, default=0)
    replied_count = Column(Integer, nullable=False, default=0)
    last_event_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_campaign_enrollments_provider_message_id", "provider_message_id"),
        Index("ix_campaign_enrollments_provider_action_id", "provider_action_id"),
    )

    @property
    def counters(self) -> dict[str, int]:
        return {
            "sent": self.sent_count,
            "delivered": self.delivered_count,
            "opened": self.opened_count,
            "clicked": self.clicked_count,
            "replied": self.replied_count,
        }
