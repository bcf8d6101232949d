"""Enrollment resolver — map an event's enrollment key to an Enrollment.

A miss is expected: providers often call back before the enrollment workflow
has committed its row. Callers route misses to the orphaned queue.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from outreach_events.models.enrollment import Enrollment

logger = logging.getLogger(__name__)

# Checked in order: our own id, then the ids providers hand back to us.
KEY_COLUMNS = (Enrollment.id, Enrollment.provider_message_id, Enrollment.provider_action_id)


def resolve_enrollment(db: Session, enrollment_key: str, lock: bool = True) -> Optional[Enrollment]:
    """Return the matching enrollment or None.

    With ``lock`` the row is selected FOR UPDATE (ignored by SQLite, which
    serializes writers anyway), so the reconciliation that follows works on a
    row no concurrent transaction can change underneath it.
    """
    if not enrollment_key:
        return None
    for column in KEY_COLUMNS:
        query = db.query(Enrollment).filter(column == enrollment_key)
        if lock:
            query = query.with_for_update()
        enrollment = query.first()
        if enrollment is not None:
            return enrollment
    logger.debug("No enrollment found for key %s", enrollment_key)
    return None
