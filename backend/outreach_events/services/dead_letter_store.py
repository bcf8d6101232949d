"""Dead letter store for events that need an operator.

Entries come from two places: payloads the normalizer rejected and orphaned
events that used up their retries. Operators list them, replay them through
the pipeline, or mark them ignored.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from outreach_events.clock import Clock, utcnow
from outreach_events.errors import (
    CounterUpdateConflict,
    DeadLetterNotFound,
    InvalidReplayState,
    MalformedEvent,
)
from outreach_events.models.dead_letter_event import DeadLetterEvent, DeadLetterStatus
from outreach_events.schemas.event import CanonicalEvent
from outreach_events.services import metrics as m
from outreach_events.services.normalizer import normalize, payload_digest

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
PURGEABLE_STATUSES = (DeadLetterStatus.replayed, DeadLetterStatus.ignored)
INTERRUPTED_REASON = "replay interrupted before completion"


@dataclass
class DeadLetterFilters:
    status: Optional[DeadLetterStatus] = None
    provider: Optional[str] = None
    event_type: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None


@dataclass
class DeadLetterPage:
    entries: list[DeadLetterEvent]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.entries) < self.total


@dataclass
class ReplayResult:
    entry: DeadLetterEvent
    outcome: str
    detail: Optional[str] = None


class DeadLetterStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        metrics: Optional[m.MetricsSink] = None,
        clock: Clock = utcnow,
        retention_days: int = 7,
        max_page_size: int = MAX_PAGE_SIZE,
        replay_lease_seconds: float = 900,
    ):
        self.session_factory = session_factory
        self.metrics = metrics or m.InMemoryMetrics()
        self.clock = clock
        self.retention = timedelta(days=retention_days)
        self.max_page_size = max_page_size
        self.replay_lease = timedelta(seconds=replay_lease_seconds)

    # ---------------------------------------------------------------- writes

    def record(
        self,
        event: CanonicalEvent,
        reason: str,
        attempts: int = 0,
        first_attempted_at: Optional[datetime] = None,
        db: Optional[Session] = None,
        kind: str = "retries_exhausted",
    ) -> DeadLetterEvent:
        """Store a failed canonical event with status ``failed``.

        With ``db`` the insert joins the caller's transaction and the caller
        commits (and counts the metric once it has).
        """
        now = self.clock()
        entry = DeadLetterEvent(
            provider=event.provider,
            provider_event_id=event.provider_event_id,
            event_type=event.event_type,
            channel=event.channel,
            enrollment_key=event.enrollment_key,
            occurred_at=event.occurred_at,
            raw_payload_ref=event.raw_payload_ref,
            raw_payload=event.raw_payload,
            failure_reason=reason,
            attempts=attempts,
            status=DeadLetterStatus.failed,
            first_attempted_at=first_attempted_at or now,
            last_attempted_at=now,
            created_at=now,
        )
        if db is not None:
            db.add(entry)
            db.flush()
            return entry
        return self._insert(entry, kind)

    def record_malformed(self, provider: str, payload: Any, reason: str) -> DeadLetterEvent:
        raw = payload if isinstance(payload, dict) else {"body": payload}
        now = self.clock()
        entry = DeadLetterEvent(
            provider=provider,
            raw_payload_ref=payload_digest(raw),
            raw_payload=raw,
            failure_reason=reason,
            attempts=0,
            status=DeadLetterStatus.failed,
            first_attempted_at=now,
            last_attempted_at=now,
            created_at=now,
        )
        return self._insert(entry, "malformed")

    def _insert(self, entry: DeadLetterEvent, kind: str) -> DeadLetterEvent:
        db = self.session_factory()
        try:
            db.add(entry)
            db.commit()
            db.refresh(entry)
            db.expunge(entry)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        self.metrics.increment(m.EVENTS_DEAD_LETTERED, labels={"reason": kind})
        logger.error(
            "Dead-lettered %s event %s (%s): %s",
            entry.provider, entry.provider_event_id or "<malformed>", entry.id, entry.failure_reason,
        )
        return entry

    # ----------------------------------------------------------------- reads

    def list(
        self,
        filters: Optional[DeadLetterFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> DeadLetterPage:
        """Newest first. ``limit`` is capped at the configured page size."""
        filters = filters or DeadLetterFilters()
        limit = max(1, min(limit, self.max_page_size))
        offset = max(0, offset)
        db = self.session_factory()
        try:
            query = db.query(DeadLetterEvent)
            if filters.status is not None:
                query = query.filter(DeadLetterEvent.status == filters.status)
            if filters.provider:
                query = query.filter(DeadLetterEvent.provider == filters.provider.lower())
            if filters.event_type:
                query = query.filter(DeadLetterEvent.event_type == filters.event_type)
            if filters.created_after is not None:
                query = query.filter(DeadLetterEvent.created_at >= filters.created_after)
            if filters.created_before is not None:
                query = query.filter(DeadLetterEvent.created_at <= filters.created_before)
            total = query.count()
            entries = (
                query.order_by(DeadLetterEvent.created_at.desc(), DeadLetterEvent.id)
                .offset(offset)
                .limit(limit)
                .all()
            )
            db.expunge_all()
        finally:
            db.close()
        return DeadLetterPage(entries=entries, total=total, limit=limit, offset=offset)

    def get(self, entry_id: str) -> DeadLetterEvent:
        db = self.session_factory()
        try:
            entry = db.query(DeadLetterEvent).filter(DeadLetterEvent.id == entry_id).first()
            if entry is None:
                raise DeadLetterNotFound(entry_id)
            db.expunge(entry)
            return entry
        finally:
            db.close()

    def stats(self) -> dict:
        db = self.session_factory()
        try:
            rows = (
                db.query(DeadLetterEvent.status, DeadLetterEvent.event_type, func.count(DeadLetterEvent.id))
                .group_by(DeadLetterEvent.status, DeadLetterEvent.event_type)
                .all()
            )
        finally:
            db.close()
        by_status: dict[str, int] = {status.value: 0 for status in DeadLetterStatus}
        by_status_and_type = []
        for status, event_type, count in rows:
            by_status[status.value] += count
            by_status_and_type.append({"status": status.value, "event_type": event_type, "count": count})
        return {"by_status": by_status, "by_status_and_type": by_status_and_type}

    # ------------------------------------------------------------ operations

    def replay(self, entry_id: str, processor: Callable) -> ReplayResult:
        """Re-run a ``failed`` entry through ``processor`` (the pipeline's
        ``process``). Applied or duplicate marks it ``replayed``; anything else
        puts it back to ``failed`` with the new reason."""
        entry = self._transition(entry_id, DeadLetterStatus.replaying, "replay")

        try:
            event = self._rebuild(entry)
            result = processor(event)
        except (MalformedEvent, CounterUpdateConflict) as exc:
            return self._finish_replay(entry_id, ok=False, outcome="failed", detail=str(exc))
        except Exception as exc:
            self._finish_replay(entry_id, ok=False, outcome="failed", detail=f"{type(exc).__name__}: {exc}")
            raise

        if result.resolved:
            return self._finish_replay(entry_id, ok=True, outcome=result.outcome.value, detail=result.detail)
        return self._finish_replay(entry_id, ok=False, outcome=result.outcome.value, detail=result.detail)

    def release_stale_replays(self, now: Optional[datetime] = None) -> int:
        """Put entries stuck in ``replaying`` past the lease back to ``failed``.

        ``replay`` commits ``replaying`` before running the pipeline; a process
        that dies in between would otherwise leave the entry unreachable.
        """
        cutoff = (now or self.clock()) - self.replay_lease
        db = self.session_factory()
        try:
            released = (
                db.query(DeadLetterEvent)
                .filter(
                    DeadLetterEvent.status == DeadLetterStatus.replaying,
                    DeadLetterEvent.last_attempted_at < cutoff,
                )
                .update(
                    {
                        DeadLetterEvent.status: DeadLetterStatus.failed,
                        DeadLetterEvent.failure_reason: INTERRUPTED_REASON,
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if released:
            logger.warning(
                "Released %d dead letter entries stuck in replaying since before %s",
                released, cutoff.isoformat(),
            )
        return released

    def ignore(self, entry_id: str) -> DeadLetterEvent:
        entry = self._transition(entry_id, DeadLetterStatus.ignored, "ignore")
        logger.info("Dead letter %s ignored", entry_id)
        return entry

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete replayed/ignored entries older than the retention window."""
        cutoff = (now or self.clock()) - self.retention
        db = self.session_factory()
        try:
            deleted = (
                db.query(DeadLetterEvent)
                .filter(
                    DeadLetterEvent.status.in_(PURGEABLE_STATUSES),
                    DeadLetterEvent.created_at < cutoff,
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if deleted:
            logger.info("Purged %d resolved dead letter entries older than %s", deleted, cutoff.isoformat())
        return deleted

    # --------------------------------------------------------------- helpers

    def _transition(self, entry_id: str, target: DeadLetterStatus, action: str) -> DeadLetterEvent:
        """Move a ``failed`` entry to ``target`` with a conditional UPDATE so
        two operators cannot both claim it."""
        values = {DeadLetterEvent.status: target}
        if target is DeadLetterStatus.replaying:
            # Starts the replay lease.
            values[DeadLetterEvent.last_attempted_at] = self.clock()
        db = self.session_factory()
        try:
            updated = (
                db.query(DeadLetterEvent)
                .filter(DeadLetterEvent.id == entry_id, DeadLetterEvent.status == DeadLetterStatus.failed)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                db.rollback()
                entry = db.query(DeadLetterEvent).filter(DeadLetterEvent.id == entry_id).first()
                if entry is None:
                    raise DeadLetterNotFound(entry_id)
                raise InvalidReplayState(entry_id, entry.status.value, action)
            db.commit()
            entry = db.query(DeadLetterEvent).filter(DeadLetterEvent.id == entry_id).one()
            db.expunge(entry)
            return entry
        finally:
            db.close()

    def _rebuild(self, entry: DeadLetterEvent) -> CanonicalEvent:
        if entry.provider_event_id is None:
            # Malformed at ingestion: give the normalizer another go.
            return normalize(entry.provider, entry.raw_payload)
        return CanonicalEvent.from_record(entry, attempts=entry.attempts)

    def _finish_replay(self, entry_id: str, ok: bool, outcome: str, detail: Optional[str]) -> ReplayResult:
        now = self.clock()
        db = self.session_factory()
        try:
            entry = db.query(DeadLetterEvent).filter(DeadLetterEvent.id == entry_id).one()
            entry.attempts += 1
            entry.last_attempted_at = now
            if ok:
                entry.status = DeadLetterStatus.replayed
                entry.replayed_at = now
            else:
                entry.status = DeadLetterStatus.failed
                entry.failure_reason = f"replay failed: {detail or outcome}"
            db.commit()
            db.refresh(entry)
            db.expunge(entry)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if ok:
            logger.info("Dead letter %s replayed (%s)", entry_id, outcome)
        else:
            logger.warning("Replay of dead letter %s failed: %s", entry_id, detail or outcome)
        return ReplayResult(entry=entry, outcome=outcome, detail=detail)
