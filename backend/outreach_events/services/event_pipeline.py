"""Event pipeline — normalizer → dedup gate → resolver → reconciler.

``process`` runs the resolver-onward half in one transaction and is what the
orphaned queue and dead letter replay call. ``ingest`` is the webhook entry
point: it adds normalization in front and routes misses to the orphaned
queue and malformed payloads to the dead letter store.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from outreach_events.clock import Clock, utcnow
from outreach_events.errors import CounterUpdateConflict, EnrollmentNotFound, MalformedEvent
from outreach_events.schemas.event import CanonicalEvent
from outreach_events.services import metrics as m
from outreach_events.services.dedup_gate import claim_event
from outreach_events.services.enrollment_resolver import resolve_enrollment
from outreach_events.services.normalizer import normalize
from outreach_events.services.status_reconciler import ReconcileResult, apply_event

logger = logging.getLogger(__name__)


class ProcessOutcome(str, enum.Enum):
    applied = "applied"
    duplicate = "duplicate"
    not_found = "not_found"
    queued = "queued"
    dead_lettered = "dead_lettered"


@dataclass(frozen=True)
class ProcessResult:
    outcome: ProcessOutcome
    provider: str
    provider_event_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    reconcile: Optional[ReconcileResult] = None
    dead_letter_id: Optional[str] = None
    detail: Optional[str] = None

    @property
    def resolved(self) -> bool:
        """Applied now, or applied earlier by another path."""
        return self.outcome in (ProcessOutcome.applied, ProcessOutcome.duplicate)


class EventPipeline:
    """Owns the per-event transaction. ``queue`` and ``dead_letters`` are
    attached by ``outreach_events.dependencies.build_pipeline``."""

    def __init__(self, session_factory: sessionmaker, metrics: Optional[m.MetricsSink] = None, clock: Clock = utcnow):
        self.session_factory = session_factory
        self.metrics = metrics or m.InMemoryMetrics()
        self.clock = clock
        self.queue = None
        self.dead_letters = None

    def process(self, event: CanonicalEvent) -> ProcessResult:
        """Claim, resolve and reconcile one event in a single transaction.

        Returns ``applied`` only after the commit succeeded. Infrastructure
        failures are raised as CounterUpdateConflict so the caller can retry.
        """
        db = self.session_factory()
        try:
            record = claim_event(db, event)
            if record is None:
                self.metrics.increment(m.EVENTS_DUPLICATE)
                return ProcessResult(ProcessOutcome.duplicate, event.provider, event.provider_event_id)

            enrollment = resolve_enrollment(db, event.enrollment_key, lock=True)
            if enrollment is None:
                # Releases the claim so a later retry can take it.
                db.rollback()
                return ProcessResult(
                    ProcessOutcome.not_found,
                    event.provider,
                    event.provider_event_id,
                    detail=str(EnrollmentNotFound(event.enrollment_key)),
                )

            result = apply_event(db, enrollment, event, self.clock())
            record.enrollment_id = enrollment.id
            record.status_advanced = result.status_advanced
            db.commit()
        except CounterUpdateConflict:
            db.rollback()
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            raise CounterUpdateConflict(event.provider, event.provider_event_id, exc) from exc
        finally:
            db.close()

        self.metrics.increment(m.EVENTS_SUCCEEDED, labels={"event_type": event.event_type})
        logger.info(
            "Applied %s event %s/%s to enrollment %s (status %s%s)",
            event.event_type,
            event.provider,
            event.provider_event_id,
            result.enrollment_id,
            result.target_status.value if result.status_advanced else "unchanged",
            f", +1 {result.counter}" if result.counter else "",
        )
        return ProcessResult(
            ProcessOutcome.applied,
            event.provider,
            event.provider_event_id,
            enrollment_id=result.enrollment_id,
            reconcile=result,
        )

    def ingest(self, provider: str, payload: Any) -> ProcessResult:
        """Webhook entry point for an already-authenticated payload."""
        self.metrics.increment(m.EVENTS_RECEIVED, labels={"provider": str(provider).lower()})
        try:
            event = normalize(provider, payload)
        except MalformedEvent as exc:
            logger.warning("Malformed %s payload sent to dead letter: %s", exc.provider, exc.reason)
            self.metrics.increment(m.EVENTS_FAILED, labels={"reason": "malformed"})
            entry = self.dead_letters.record_malformed(exc.provider, payload, exc.reason)
            return ProcessResult(
                ProcessOutcome.dead_lettered,
                exc.provider,
                dead_letter_id=entry.id,
                detail=str(exc),
            )

        try:
            result = self.process(event)
        except CounterUpdateConflict as exc:
            logger.warning("Reconciliation failed, queueing %s/%s for retry: %s",
                           event.provider, event.provider_event_id, exc)
            self.metrics.increment(m.EVENTS_FAILED, labels={"reason": "counter_update_conflict"})
            self.queue.enqueue(event, error=str(exc))
            return ProcessResult(ProcessOutcome.queued, event.provider, event.provider_event_id, detail=str(exc))

        if result.outcome is ProcessOutcome.not_found:
            logger.warning(
                "Orphaned %s event %s/%s: no enrollment for key %s yet, queueing for retry",
                event.event_type, event.provider, event.provider_event_id, event.enrollment_key,
            )
            self.metrics.increment(m.EVENTS_FAILED, labels={"reason": "enrollment_not_found"})
            self.queue.enqueue(event, error=result.detail)
            return ProcessResult(ProcessOutcome.queued, event.provider, event.provider_event_id, detail=result.detail)
        return result
