"""Dead letter admin routes: list, inspect, replay, ignore."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from outreach_events.clock import as_utc
from outreach_events.dependencies import Components, get_components
from outreach_events.errors import DeadLetterNotFound, InvalidReplayState
from outreach_events.models.dead_letter_event import DeadLetterStatus
from outreach_events.schemas.dead_letter import (
    DeadLetterOut,
    DeadLetterPageOut,
    DeadLetterStatsOut,
    Pagination,
    ReplayOut,
)
from outreach_events.services.dead_letter_store import DeadLetterFilters

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=DeadLetterPageOut)
def list_dead_letters(
    status: Optional[DeadLetterStatus] = Query(None),
    provider: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    created_after: Optional[datetime] = Query(None),
    created_before: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    components: Components = Depends(get_components),
):
    """Newest first, filtered and paginated."""
    page = components.dead_letters.list(
        DeadLetterFilters(
            status=status,
            provider=provider,
            event_type=event_type,
            created_after=as_utc(created_after),
            created_before=as_utc(created_before),
        ),
        limit=limit,
        offset=offset,
    )
    return DeadLetterPageOut(
        data=[DeadLetterOut.model_validate(entry) for entry in page.entries],
        pagination=Pagination(total=page.total, limit=page.limit, offset=page.offset, has_more=page.has_more),
    )


@router.get("/stats", response_model=DeadLetterStatsOut)
def dead_letter_stats(components: Components = Depends(get_components)):
    return components.dead_letters.stats()


@router.get("/{entry_id}", response_model=DeadLetterOut)
def get_dead_letter(entry_id: str, components: Components = Depends(get_components)):
    try:
        return components.dead_letters.get(entry_id)
    except DeadLetterNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/{entry_id}/replay", response_model=ReplayOut)
def replay_dead_letter(entry_id: str, components: Components = Depends(get_components)):
    """Re-run a failed entry through the pipeline."""
    try:
        result = components.dead_letters.replay(entry_id, components.pipeline.process)
    except DeadLetterNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidReplayState as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return ReplayOut(entry=DeadLetterOut.model_validate(result.entry), outcome=result.outcome, detail=result.detail)


@router.post("/{entry_id}/ignore", response_model=DeadLetterOut)
def ignore_dead_letter(entry_id: str, components: Components = Depends(get_components)):
    try:
        return components.dead_letters.ignore(entry_id)
    except DeadLetterNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except InvalidReplayState as exc:
        raise HTTPException(status_code=409, detail=str(exc))
