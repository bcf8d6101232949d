"""Tests for the dead letter store: list, replay, ignore."""
from datetime import timedelta

import pytest

from outreach_events.errors import DeadLetterNotFound, InvalidReplayState
from outreach_events.models.dead_letter_event import DeadLetterStatus
from outreach_events.models.enrollment import EnrollmentStatus
from outreach_events.services.dead_letter_store import INTERRUPTED_REASON, DeadLetterFilters
from tests.conftest import create_enrollment, make_event, reload_enrollment


class TestReplay:
    """Replay re-runs the pipeline from the resolver."""

    def test_replay_success(self, db, components):
        entry = components.dead_letters.record(make_event("enr_r", event_type="opened"), reason="retries exhausted")
        create_enrollment(db, enrollment_id="enr_r")

        result = components.dead_letters.replay(entry.id, components.pipeline.process)
        assert result.outcome == "applied"
        assert result.entry.status == DeadLetterStatus.replayed
        assert result.entry.replayed_at is not None
        assert result.entry.attempts == 1
        assert reload_enrollment(db, "enr_r").status == EnrollmentStatus.opened

    def test_replay_of_applied_event_is_noop(self, db, components):
        enrollment = create_enrollment(db)
        event = make_event(enrollment.id, provider_event_id="e1")
        components.pipeline.process(event)
        entry = components.dead_letters.record(event, reason="stale copy")

        result = components.dead_letters.replay(entry.id, components.pipeline.process)
        assert result.outcome == "duplicate"
        assert result.entry.status == DeadLetterStatus.replayed
        assert reload_enrollment(db, enrollment.id).sent_count == 1

    def test_replay_failure_returns_to_failed(self, components):
        entry = components.dead_letters.record(make_event("enr_missing"), reason="retries exhausted")
        result = components.dead_letters.replay(entry.id, components.pipeline.process)
        assert result.outcome == "not_found"
        assert result.entry.status == DeadLetterStatus.failed
        assert result.entry.failure_reason.startswith("replay failed")
        assert result.entry.attempts == 1

    def test_replay_malformed_entry_renormalizes(self, db, components):
        entry = components.dead_letters.record_malformed("internal", {"id": "e9"}, "event type is required")
        result = components.dead_letters.replay(entry.id, components.pipeline.process)
        assert result.outcome == "failed"
        assert result.entry.status == DeadLetterStatus.failed
        assert "event type is required" in result.entry.failure_reason

    def test_replay_only_from_failed(self, components):
        entry = components.dead_letters.record(make_event("enr_x"), reason="boom")
        components.dead_letters.ignore(entry.id)
        with pytest.raises(InvalidReplayState):
            components.dead_letters.replay(entry.id, components.pipeline.process)

    def test_interrupted_replay_is_released_after_lease(self, db, components, clock):
        """A process that dies mid-replay leaves the entry replayable once the lease expires."""
        entry = components.dead_letters.record(make_event("enr_r", event_type="clicked"), reason="retries exhausted")

        def _dies(event):
            raise SystemExit(1)

        with pytest.raises(SystemExit):
            components.dead_letters.replay(entry.id, _dies)
        stuck = components.dead_letters.get(entry.id)
        assert stuck.status == DeadLetterStatus.replaying
        assert stuck.last_attempted_at.replace(tzinfo=None) == clock.now.replace(tzinfo=None)

        clock.advance(60)
        assert components.dead_letters.release_stale_replays() == 0
        with pytest.raises(InvalidReplayState):
            components.dead_letters.replay(entry.id, components.pipeline.process)

        clock.advance(components.dead_letters.replay_lease.total_seconds())
        assert components.dead_letters.release_stale_replays() == 1
        released = components.dead_letters.get(entry.id)
        assert released.status == DeadLetterStatus.failed
        assert released.failure_reason == INTERRUPTED_REASON

        create_enrollment(db, enrollment_id="enr_r")
        result = components.dead_letters.replay(entry.id, components.pipeline.process)
        assert result.entry.status == DeadLetterStatus.replayed
        assert reload_enrollment(db, "enr_r").clicked_count == 1

    def test_unknown_entry(self, components):
        with pytest.raises(DeadLetterNotFound):
            components.dead_letters.replay("nope", components.pipeline.process)
        with pytest.raises(DeadLetterNotFound):
            components.dead_letters.get("nope")


class TestListing:
    """Filters, ordering and pagination."""

    def test_filters_and_newest_first(self, components, clock):
        store = components.dead_letters
        first = store.record(make_event("k", event_type="opened", provider="lemlist"), reason="r")
        clock.advance(60)
        second = store.record(make_event("k", event_type="clicked", provider="postmark"), reason="r")
        clock.advance(60)
        third = store.record(make_event("k", event_type="opened", provider="postmark"), reason="r")
        store.ignore(third.id)

        page = store.list()
        assert [e.id for e in page.entries] == [third.id, second.id, first.id]

        page = store.list(DeadLetterFilters(status=DeadLetterStatus.failed, provider="POSTMARK"))
        assert [e.id for e in page.entries] == [second.id]

        page = store.list(DeadLetterFilters(event_type="opened"))
        assert {e.id for e in page.entries} == {first.id, third.id}

        page = store.list(DeadLetterFilters(created_after=clock.now - timedelta(seconds=90)))
        assert [e.id for e in page.entries] == [third.id, second.id]

    def test_pagination(self, components, clock):
        for n in range(5):
            components.dead_letters.record(make_event("k", provider_event_id=f"e{n}"), reason="r")
            clock.advance(1)
        page = components.dead_letters.list(limit=2, offset=2)
        assert page.total == 5
        assert [e.provider_event_id for e in page.entries] == ["e2", "e1"]
        assert page.has_more
        assert not components.dead_letters.list(limit=2, offset=4).has_more

    def test_limit_is_capped(self, components):
        assert components.dead_letters.list(limit=50_000).limit == 1000

    def test_stats(self, components):
        store = components.dead_letters
        store.record(make_event("k", event_type="opened"), reason="r")
        store.record(make_event("k", event_type="opened"), reason="r")
        ignored = store.record(make_event("k", event_type="clicked"), reason="r")
        store.ignore(ignored.id)
        stats = store.stats()
        assert stats["by_status"]["failed"] == 2
        assert stats["by_status"]["ignored"] == 1
        assert {"status": "failed", "event_type": "opened", "count": 2} in stats["by_status_and_type"]


class TestIgnore:
    def test_ignore_twice_conflicts(self, components):
        entry = components.dead_letters.record(make_event("k"), reason="r")
        assert components.dead_letters.ignore(entry.id).status == DeadLetterStatus.ignored
        with pytest.raises(InvalidReplayState):
            components.dead_letters.ignore(entry.id)
