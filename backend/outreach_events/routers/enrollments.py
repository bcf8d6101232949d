"""Read-only enrollment routes."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from outreach_events.database import get_db
from outreach_events.models.campaign_event import CampaignEvent
from outreach_events.models.enrollment import Enrollment
from outreach_events.schemas.enrollment import EnrollmentOut
from outreach_events.schemas.event import CampaignEventOut

router = APIRouter()


@router.get("/{enrollment_id}", response_model=EnrollmentOut)
def get_enrollment(enrollment_id: str, db: Session = Depends(get_db)):
    enrollment = db.query(Enrollment).filter(Enrollment.id == enrollment_id).first()
    if not enrollment:
        raise HTTPException(status_code=404, detail="Enrollment not found")
    return enrollment


@router.get("/{enrollment_id}/events", response_model=list[CampaignEventOut])
def list_enrollment_events(
    enrollment_id: str,
    event_type: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """Applied events for one enrollment, oldest first."""
    if not db.query(Enrollment.id).filter(Enrollment.id == enrollment_id).first():
        raise HTTPException(status_code=404, detail="Enrollment not found")
    query = db.query(CampaignEvent).filter(CampaignEvent.enrollment_id == enrollment_id)
    if event_type:
        query = query.filter(CampaignEvent.event_type == event_type)
    return query.order_by(CampaignEvent.created_at, CampaignEvent.id).all()
