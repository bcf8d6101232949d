"""Pydantic schemas for canonical events and the event log."""
from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel


class CanonicalEvent(BaseModel):
    """Provider-agnostic webhook event.

    Frozen: the only field that changes over an event's life is ``attempts``,
    and that happens by copying (``with_attempts``).
    """

    provider: str
    provider_event_id: str
    event_type: str
    channel: str
    enrollment_key: str
    occurred_at: Optional[datetime] = None
    raw_payload_ref: str
    raw_payload: dict[str, Any] = {}
    attempts: int = 0

    model_config = {"frozen": True}

    def with_attempts(self, attempts: int) -> CanonicalEvent:
        return self.model_copy(update={"attempts": attempts})

    @classmethod
    def from_record(cls, record, attempts: int = 0) -> CanonicalEvent:
        """Rebuild an event from an OrphanedEvent or DeadLetterEvent row."""
        return cls(
            provider=record.provider,
            provider_event_id=record.provider_event_id,
            event_type=record.event_type,
            channel=record.channel,
            enrollment_key=record.enrollment_key,
            occurred_at=record.occurred_at,
            raw_payload_ref=record.raw_payload_ref,
            raw_payload=record.raw_payload or {},
            attempts=attempts,
        )


class CampaignEventOut(BaseModel):
    id: str
    provider: str
    provider_event_id: str
    event_type: str
    channel: str
    enrollment_id: Optional[str] = None
    occurred_at: Optional[datetime] = None
    status_advanced: bool
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WebhookResult(BaseModel):
    outcome: str
    provider: str
    provider_event_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    dead_letter_id: Optional[str] = None
    detail: Optional[str] = None
