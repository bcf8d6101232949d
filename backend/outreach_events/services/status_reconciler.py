"""Status reconciler — monotonic enrollment status and atomic counters.

Ranks: pending(1) < sent(2) < delivered(3) < opened(4) < clicked(5) <
replied(6) = completed(6) < bounced(7) = unsubscribed(7). A transition is a
single conditional UPDATE guarded by ``status_rank < new_rank``; counters are
``col = col + 1`` in SQL. Both statements run in the caller's transaction,
next to the event-log claim, so a concurrent reader never sees one without
the other.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from outreach_events.errors import CounterUpdateConflict
from outreach_events.models.enrollment import Enrollment, EnrollmentStatus, STATUS_RANK
from outreach_events.schemas.event import CanonicalEvent

logger = logging.getLogger(__name__)

# event type -> (target status, counter)
EVENT_EFFECTS: dict[str, tuple[Optional[EnrollmentStatus], Optional[str]]] = {
    "sent": (EnrollmentStatus.sent, "sent"),
    "message_sent": (EnrollmentStatus.sent, "sent"),
    "voice_message_sent": (EnrollmentStatus.sent, "sent"),
    "delivered": (EnrollmentStatus.delivered, "delivered"),
    "opened": (EnrollmentStatus.opened, "opened"),
    "message_read": (EnrollmentStatus.opened, "opened"),
    "clicked": (EnrollmentStatus.clicked, "clicked"),
    "replied": (EnrollmentStatus.replied, "replied"),
    "message_replied": (EnrollmentStatus.replied, "replied"),
    "bounced": (EnrollmentStatus.bounced, None),
    "unsubscribed": (EnrollmentStatus.unsubscribed, None),
    "spam_reported": (EnrollmentStatus.unsubscribed, None),
}

COUNTER_COLUMNS = {
    "sent": Enrollment.sent_count,
    "delivered": Enrollment.delivered_count,
    "opened": Enrollment.opened_count,
    "clicked": Enrollment.clicked_count,
    "replied": Enrollment.replied_count,
}


@dataclass(frozen=True)
class ReconcileResult:
    enrollment_id: str
    previous_status: Optional[EnrollmentStatus]
    target_status: Optional[EnrollmentStatus]
    status_advanced: bool
    counter: Optional[str]


def event_effects(event_type: str) -> tuple[Optional[EnrollmentStatus], Optional[str]]:
    """Audit-only event types (LinkedIn invites, video lifecycle, ...) map to (None, None)."""
    return EVENT_EFFECTS.get(event_type, (None, None))


def advance_status(
    db: Session,
    enrollment_id: str,
    target: EnrollmentStatus,
    event_time: datetime,
) -> bool:
    """Move the enrollment forward to ``target`` if it ranks higher. Returns True if it moved."""
    new_rank = STATUS_RANK[target]
    updated = (
        db.query(Enrollment)
        .filter(Enrollment.id == enrollment_id, Enrollment.status_rank < new_rank)
        .update(
            {
                Enrollment.status: target,
                Enrollment.status_rank: new_rank,
                Enrollment.last_event_at: event_time,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def increment_counter(db: Session, enrollment_id: str, counter: str) -> int:
    """``UPDATE ... SET <counter> = <counter> + 1``; returns the affected row count."""
    column = COUNTER_COLUMNS[counter]
    return (
        db.query(Enrollment)
        .filter(Enrollment.id == enrollment_id)
        .update({column: column + 1}, synchronize_session=False)
    )


def apply_event(
    db: Session,
    enrollment: Enrollment,
    event: CanonicalEvent,
    now: datetime,
) -> ReconcileResult:
    """Apply one event's effects to a resolved enrollment (no commit)."""
    target, counter = event_effects(event.event_type)
    advanced = False
    if target is not None:
        advanced = advance_status(db, enrollment.id, target, event.occurred_at or now)
    if counter is not None:
        updated = increment_counter(db, enrollment.id, counter)
        if updated != 1:
            raise CounterUpdateConflict(
                event.provider,
                event.provider_event_id,
                LookupError(f"{counter} increment touched {updated} rows for enrollment {enrollment.id}"),
            )

    if target is not None and not advanced:
        logger.debug(
            "Enrollment %s stays %s on %s event %s",
            enrollment.id, enrollment.status, event.event_type, event.provider_event_id,
        )
    return ReconcileResult(
        enrollment_id=enrollment.id,
        previous_status=enrollment.status,
        target_status=target,
        status_advanced=advanced,
        counter=counter,
    )
