"""Pydantic schemas for the dead letter admin surface."""
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel


class DeadLetterOut(BaseModel):
    id: str
    provider: str
    provider_event_id: Optional[str] = None
    event_type: Optional[str] = None
    channel: Optional[str] = None
    enrollment_key: Optional[str] = None
    occurred_at: Optional[datetime] = None
    raw_payload_ref: str
    raw_payload: dict[str, Any]
    failure_reason: str
    attempts: int
    status: str
    first_attempted_at: datetime
    last_attempted_at: datetime
    replayed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class DeadLetterPageOut(BaseModel):
    data: list[DeadLetterOut]
    pagination: Pagination


class ReplayOut(BaseModel):
    entry: DeadLetterOut
    outcome: str
    detail: Optional[str] = None


class DeadLetterStatsOut(BaseModel):
    by_status: dict[str, int]
    by_status_and_type: list[dict[str, Any]]
