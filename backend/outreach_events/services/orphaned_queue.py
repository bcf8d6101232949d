"""Durable retry queue for events whose enrollment is missing.

Entries live in ``orphaned_events`` so a restart loses nothing. A batch picks
up to ``batch_size`` entries that are due, re-runs the pipeline from the
resolver, and either deletes the entry (resolved), reschedules it with the
next backoff delay, or moves it to the dead letter store once the retry
budget is spent.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from outreach_events.clock import Clock, as_utc, utcnow
from outreach_events.config import check_retry_shape
from outreach_events.errors import CounterUpdateConflict, RetriesExhausted
from outreach_events.models.orphaned_event import OrphanedEvent
from outreach_events.schemas.event import CanonicalEvent
from outreach_events.services import metrics as m
from outreach_events.services.dead_letter_store import DeadLetterStore

logger = logging.getLogger(__name__)

DEFAULT_DELAYS_SECONDS = (5, 15, 60, 300, 900, 3600)
CAPACITY_REASON = "orphaned queue at capacity"


class RetryPolicy:
    """Exponential-ish backoff with additive jitter.

    ``delay(n)`` is the wait before retry ``n + 1``; attempts past the end of
    the table reuse the last delay.
    """

    def __init__(
        self,
        delays: Sequence[float] = DEFAULT_DELAYS_SECONDS,
        max_attempts: int = 6,
        jitter_seconds: float = 1.0,
        rng: Optional[random.Random] = None,
    ):
        check_retry_shape(list(delays), max_attempts, jitter_seconds)
        self.delays = tuple(float(d) for d in delays)
        self.max_attempts = max_attempts
        self.jitter_seconds = jitter_seconds
        self.rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, rng: Optional[random.Random] = None) -> "RetryPolicy":
        return cls(
            delays=settings.ORPHAN_RETRY_DELAYS_SECONDS,
            max_attempts=settings.ORPHAN_MAX_ATTEMPTS,
            jitter_seconds=settings.ORPHAN_JITTER_SECONDS,
            rng=rng,
        )

    def delay(self, attempt: int) -> timedelta:
        base = self.delays[min(max(attempt, 0), len(self.delays) - 1)]
        jitter = self.rng.uniform(0, self.jitter_seconds) if self.jitter_seconds else 0.0
        return timedelta(seconds=base + jitter)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


@dataclass
class EnqueueResult:
    entry_id: str
    next_retry_at: datetime
    created: bool


@dataclass
class BatchResult:
    skipped: bool = False
    processed: int = 0
    resolved: int = 0
    rescheduled: int = 0
    dead_lettered: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class DrainResult:
    cycles: int = 0
    processed: int = 0
    remaining: int = 0
    elapsed_seconds: float = 0.0


class OrphanedEventQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        processor: Callable,
        dead_letters: DeadLetterStore,
        policy: Optional[RetryPolicy] = None,
        batch_size: int = 50,
        max_size: int = 10000,
        stale_after_seconds: float = 3600,
        metrics: Optional[m.MetricsSink] = None,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.processor = processor
        self.dead_letters = dead_letters
        self.policy = policy or RetryPolicy()
        self.batch_size = batch_size
        self.max_size = max_size
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self.metrics = metrics or m.InMemoryMetrics()
        self.clock = clock
        self._in_flight = threading.Lock()

    # --------------------------------------------------------------- enqueue

    def enqueue(self, event: CanonicalEvent, error: Optional[str] = None) -> EnqueueResult:
        """Persist an orphaned event. Re-enqueueing a queued event is a no-op.

        The new row is inserted first and the queue is then trimmed back to
        ``max_size`` in the same transaction, so an overshoot left by
        concurrent writers is removed by the next enqueue. Storage errors
        propagate: an event is only acknowledged as queued once it is durable.
        """
        now = self.clock()
        db = self.session_factory()
        try:
            entry = OrphanedEvent(
                provider=event.provider,
                provider_event_id=event.provider_event_id,
                event_type=event.event_type,
                channel=event.channel,
                enrollment_key=event.enrollment_key,
                occurred_at=event.occurred_at,
                raw_payload_ref=event.raw_payload_ref,
                raw_payload=event.raw_payload,
                enqueued_at=now,
                next_retry_at=now + self.policy.delay(0),
                attempts=0,
                last_error=error,
            )
            db.add(entry)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                existing = (
                    db.query(OrphanedEvent)
                    .filter(
                        OrphanedEvent.provider == event.provider,
                        OrphanedEvent.provider_event_id == event.provider_event_id,
                    )
                    .one()
                )
                logger.info("Event %s/%s already queued", event.provider, event.provider_event_id)
                return EnqueueResult(existing.id, as_utc(existing.next_retry_at), created=False)

            depth = db.query(func.count(OrphanedEvent.id)).scalar()
            evicted = []
            if depth > self.max_size:
                evicted = self._evict_oldest(db, depth - self.max_size, keep_id=entry.id)
            db.commit()
            result = EnqueueResult(entry.id, as_utc(entry.next_retry_at), created=True)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        for provider, provider_event_id in evicted:
            self.metrics.increment(m.EVENTS_DEAD_LETTERED, labels={"reason": "queue_capacity"})
            logger.error(
                "Orphaned queue full (%d), moved oldest entry %s/%s to dead letter",
                self.max_size, provider, provider_event_id,
            )
        self.metrics.increment(m.QUEUE_ENQUEUED)
        self.metrics.gauge(m.QUEUE_DEPTH, depth - len(evicted))
        logger.info(
            "Queued orphaned %s event %s/%s, first retry at %s",
            event.event_type, event.provider, event.provider_event_id, result.next_retry_at.isoformat(),
        )
        return result

    def _evict_oldest(self, db: Session, count: int, keep_id: str) -> list[tuple[str, str]]:
        """Move the ``count`` oldest entries to the dead letter store inside
        ``db``'s transaction. Returns their (provider, provider_event_id)."""
        oldest = (
            db.query(OrphanedEvent)
            .filter(OrphanedEvent.id != keep_id)
            .order_by(OrphanedEvent.enqueued_at, OrphanedEvent.id)
            .limit(count)
            .with_for_update(skip_locked=True)
            .all()
        )
        evicted = []
        for entry in oldest:
            self.dead_letters.record(
                CanonicalEvent.from_record(entry, attempts=entry.attempts),
                reason=CAPACITY_REASON,
                attempts=entry.attempts,
                first_attempted_at=as_utc(entry.enqueued_at),
                db=db,
            )
            evicted.append((entry.provider, entry.provider_event_id))
            db.delete(entry)
        return evicted

    # ------------------------------------------------------------ processing

    def process_due(self, now: Optional[datetime] = None) -> BatchResult:
        """Process one batch of due entries. Only one batch runs at a time;
        a call made while another is in progress returns ``skipped``."""
        if not self._in_flight.acquire(blocking=False):
            logger.warning("Orphaned queue batch still running, skipping tick")
            self.metrics.increment(m.QUEUE_TICKS_SKIPPED)
            return BatchResult(skipped=True)
        try:
            return self._process_batch(now or self.clock())
        finally:
            self._in_flight.release()

    def wait_idle(self, timeout: float = -1) -> bool:
        """Block until no batch is running. Returns False on timeout."""
        if not self._in_flight.acquire(timeout=timeout):
            return False
        self._in_flight.release()
        return True

    def _process_batch(self, now: datetime) -> BatchResult:
        result = BatchResult()
        db = self.session_factory()
        try:
            due = (
                db.query(OrphanedEvent)
                .filter(OrphanedEvent.next_retry_at <= now)
                .order_by(OrphanedEvent.next_retry_at)
                .limit(self.batch_size)
                .all()
            )
            batch = [
                (entry.id, CanonicalEvent.from_record(entry, attempts=entry.attempts), as_utc(entry.enqueued_at))
                for entry in due
            ]
        finally:
            db.close()

        for entry_id, event, enqueued_at in batch:
            result.processed += 1
            try:
                self._retry(entry_id, event, enqueued_at, now, result)
            except SQLAlchemyError as exc:
                # Entry stays as it was and is picked up again next batch.
                logger.error(
                    "Orphaned event %s/%s could not be updated after retry: %s",
                    event.provider, event.provider_event_id, exc, exc_info=True,
                )
                result.errors.append(f"{type(exc).__name__}: {exc}")

        if batch:
            logger.info(
                "Orphaned queue batch: %d processed, %d resolved, %d rescheduled, %d dead-lettered",
                result.processed, result.resolved, result.rescheduled, result.dead_lettered,
            )
        self.metrics.gauge(m.QUEUE_DEPTH, self.depth())
        return result

    def _retry(
        self,
        entry_id: str,
        event: CanonicalEvent,
        enqueued_at: datetime,
        now: datetime,
        result: BatchResult,
    ) -> None:
        try:
            outcome = self.processor(event)
            error = None if outcome.resolved else outcome.detail or outcome.outcome.value
        except CounterUpdateConflict as exc:
            error = str(exc)
            result.errors.append(error)

        if error is None:
            self._delete(entry_id)
            result.resolved += 1
            self.metrics.observe(m.TIME_TO_RESOLUTION, (now - enqueued_at).total_seconds())
            logger.info(
                "Orphaned event %s/%s resolved after %d retries",
                event.provider, event.provider_event_id, event.attempts + 1,
            )
            return

        attempts = event.attempts + 1
        if self.policy.exhausted(attempts):
            self._dead_letter(entry_id, event.with_attempts(attempts), enqueued_at, error)
            result.dead_lettered += 1
            return

        next_retry_at = now + self.policy.delay(attempts)
        self._reschedule(entry_id, attempts, error, next_retry_at)
        result.rescheduled += 1
        logger.debug(
            "Orphaned event %s/%s retry %d failed (%s), next at %s",
            event.provider, event.provider_event_id, attempts, error, next_retry_at.isoformat(),
        )

    def _delete(self, entry_id: str) -> None:
        db = self.session_factory()
        try:
            db.query(OrphanedEvent).filter(OrphanedEvent.id == entry_id).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

    def _reschedule(self, entry_id: str, attempts: int, error: str, next_retry_at: datetime) -> None:
        db = self.session_factory()
        try:
            db.query(OrphanedEvent).filter(OrphanedEvent.id == entry_id).update(
                {
                    OrphanedEvent.attempts: attempts,
                    OrphanedEvent.last_error: error,
                    OrphanedEvent.next_retry_at: next_retry_at,
                },
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

    def _dead_letter(self, entry_id: str, event: CanonicalEvent, enqueued_at: datetime, error: str) -> None:
        exhausted = RetriesExhausted(event.provider, event.provider_event_id, event.attempts, error)
        db = self.session_factory()
        try:
            entry = db.query(OrphanedEvent).filter(OrphanedEvent.id == entry_id).first()
            if entry is None:
                return
            dead = self.dead_letters.record(
                event,
                reason=str(exhausted),
                attempts=event.attempts,
                first_attempted_at=enqueued_at,
                db=db,
            )
            db.delete(entry)
            db.commit()
            dead_id = dead.id
        finally:
            db.close()
        self.metrics.increment(m.EVENTS_DEAD_LETTERED, labels={"reason": "retries_exhausted"})
        logger.error(
            "Orphaned event %s/%s moved to dead letter %s: %s",
            event.provider, event.provider_event_id, dead_id, exhausted,
        )

    # ----------------------------------------------------------- inspection

    def depth(self) -> int:
        db = self.session_factory()
        try:
            return db.query(func.count(OrphanedEvent.id)).scalar()
        finally:
            db.close()

    def status(self, now: Optional[datetime] = None) -> dict:
        now = now or self.clock()
        db = self.session_factory()
        try:
            depth = db.query(func.count(OrphanedEvent.id)).scalar()
            ready = db.query(func.count(OrphanedEvent.id)).filter(OrphanedEvent.next_retry_at <= now).scalar()
            stale = (
                db.query(func.count(OrphanedEvent.id))
                .filter(OrphanedEvent.enqueued_at < now - self.stale_after)
                .scalar()
            )
            oldest = db.query(func.min(OrphanedEvent.enqueued_at)).scalar()
            by_attempts = dict(
                db.query(OrphanedEvent.attempts, func.count(OrphanedEvent.id))
                .group_by(OrphanedEvent.attempts)
                .all()
            )
        finally:
            db.close()
        return {
            "depth": depth,
            "ready": ready,
            "stale": stale,
            "by_attempts": {str(k): v for k, v in sorted(by_attempts.items())},
            "oldest_enqueued_at": as_utc(oldest).isoformat() if oldest else None,
            "processing": self._in_flight.locked(),
            "max_size": self.max_size,
            "healthy": stale == 0 and depth < self.max_size // 2,
        }

    def drain(self, max_seconds: float = 30.0, max_cycles: int = 10) -> DrainResult:
        """Work through due entries before shutdown, bounded by time and cycles."""
        started = time.monotonic()
        result = DrainResult()
        while result.cycles < max_cycles and time.monotonic() - started < max_seconds:
            now = self.clock()
            if self.status(now)["ready"] == 0:
                break
            batch = self.process_due(now)
            result.cycles += 1
            if batch.skipped:
                time.sleep(0.1)
                continue
            result.processed += batch.processed
            if batch.resolved == 0 and batch.rescheduled == batch.processed:
                # Nothing left that can succeed right now.
                break
        result.remaining = self.depth()
        result.elapsed_seconds = time.monotonic() - started
        logger.info(
            "Orphaned queue drain: %d processed in %d cycles, %d remaining",
            result.processed, result.cycles, result.remaining,
        )
        return result
