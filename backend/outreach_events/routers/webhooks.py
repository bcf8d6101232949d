"""Webhook intake: one endpoint per provider, all through the same pipeline.

Payloads arrive already authenticated by the edge. The status code tells the
provider whether to redeliver: 2xx always means "stop sending this one".
"""
import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Response, status

from outreach_events.dependencies import Components, get_components
from outreach_events.schemas.event import WebhookResult
from outreach_events.services.event_pipeline import ProcessOutcome

logger = logging.getLogger(__name__)
router = APIRouter()

STATUS_CODES = {
    ProcessOutcome.applied: status.HTTP_201_CREATED,
    ProcessOutcome.duplicate: status.HTTP_200_OK,
    ProcessOutcome.queued: status.HTTP_202_ACCEPTED,
    ProcessOutcome.dead_lettered: status.HTTP_202_ACCEPTED,
}


@router.post("/{provider}", response_model=WebhookResult)
def receive_webhook(
    provider: str,
    response: Response,
    payload: Any = Body(...),
    components: Components = Depends(get_components),
):
    """Normalize and apply a provider callback."""
    result = components.pipeline.ingest(provider, payload)
    response.status_code = STATUS_CODES[result.outcome]
    return WebhookResult(
        outcome=result.outcome.value,
        provider=result.provider,
        provider_event_id=result.provider_event_id,
        enrollment_id=result.enrollment_id,
        dead_letter_id=result.dead_letter_id,
        detail=result.detail,
    )
