"""Deduplication gate — claim an event in the durable event log.

The claim is a plain INSERT; the unique (provider, provider_event_id)
constraint decides who wins. No existence query precedes the insert.
"""
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from outreach_events.models.campaign_event import CampaignEvent
from outreach_events.schemas.event import CanonicalEvent

logger = logging.getLogger(__name__)


def claim_event(db: Session, event: CanonicalEvent) -> CampaignEvent | None:
    """Insert the event-log row inside the caller's transaction.

    Returns the new row, or None when the pair was already recorded. On a
    duplicate the caller's transaction has been rolled back, so the claim must
    be the first write of the transaction.
    """
    record = CampaignEvent(
        provider=event.provider,
        provider_event_id=event.provider_event_id,
        event_type=event.event_type,
        channel=event.channel,
        enrollment_key=event.enrollment_key,
        occurred_at=event.occurred_at,
        raw_payload_ref=event.raw_payload_ref,
        payload=event.raw_payload,
        status_advanced=False,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info(
            "Duplicate event ignored: %s/%s (%s)",
            event.provider, event.provider_event_id, event.event_type,
        )
        return None
    return record
