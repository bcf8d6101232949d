"""Pydantic schemas for Enrollments (read-only)."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class EnrollmentCounters(BaseModel):
    sent: int
    delivered: int
    opened: int
    clicked: int
    replied: int


class EnrollmentOut(BaseModel):
    id: str
    campaign_instance_id: str
    contact_identifier: str
    status: str
    counters: EnrollmentCounters
    last_event_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
