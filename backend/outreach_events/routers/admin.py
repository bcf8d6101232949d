"""Operational views: orphaned queue status and the metrics snapshot."""
from fastapi import APIRouter, Depends, HTTPException

from outreach_events.dependencies import Components, get_components

router = APIRouter()


@router.get("/orphaned-events/status")
def orphaned_queue_status(components: Components = Depends(get_components)):
    return components.queue.status()


@router.get("/metrics")
def metrics_snapshot(components: Components = Depends(get_components)):
    snapshot = getattr(components.metrics, "snapshot", None)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Metrics sink does not expose a snapshot")
    return snapshot()
