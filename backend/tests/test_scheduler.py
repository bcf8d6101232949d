"""Tests for the asyncio orphaned queue scheduler."""
import asyncio
import threading
import time

from outreach_events.models.dead_letter_event import DeadLetterStatus
from outreach_events.models.enrollment import EnrollmentStatus
from outreach_events.services.orphaned_queue import OrphanedEventQueue, RetryPolicy
from outreach_events.services.scheduler import OrphanedQueueScheduler
from tests.conftest import create_enrollment, make_event, reload_enrollment


class TestScheduler:
    """Ticks run queue batches off the event loop."""

    def test_tick_processes_due_entries(self, db, components, clock):
        create_enrollment(db, enrollment_id="enr_s")
        components.queue.enqueue(make_event("enr_s", event_type="delivered"))
        clock.advance(10)

        scheduler = OrphanedQueueScheduler(components.queue, interval=0.01, dead_letters=components.dead_letters)
        result = asyncio.run(scheduler.tick())

        assert result.resolved == 1
        assert scheduler.ticks == 1
        assert reload_enrollment(db, "enr_s").status == EnrollmentStatus.delivered

    def test_start_and_stop(self, db, components, clock):
        create_enrollment(db, enrollment_id="enr_s")
        components.queue.enqueue(make_event("enr_s", event_type="opened"))
        clock.advance(10)
        scheduler = OrphanedQueueScheduler(components.queue, interval=0.01)

        async def _run():
            scheduler.start()
            scheduler.start()
            for _ in range(500):
                if scheduler.ticks >= 1 and components.queue.depth() == 0:
                    break
                await asyncio.sleep(0.01)
            await scheduler.stop()

        asyncio.run(_run())
        assert scheduler.ticks >= 1
        assert scheduler.running is False
        assert reload_enrollment(db, "enr_s").opened_count == 1

    def test_stop_drains_ready_entries(self, db, components, clock):
        create_enrollment(db, enrollment_id="enr_s")
        components.queue.enqueue(make_event("enr_s", event_type="clicked"))
        clock.advance(10)
        scheduler = OrphanedQueueScheduler(components.queue, interval=3600, drain_on_stop_seconds=5)

        async def _run():
            scheduler.start()
            await asyncio.sleep(0)
            await scheduler.stop()

        asyncio.run(_run())
        assert scheduler.ticks == 0
        assert reload_enrollment(db, "enr_s").clicked_count == 1

    def test_stop_waits_for_running_batch(self, db, session_factory, components, clock):
        """stop() returns only once the batch running in the worker thread is done."""
        started = threading.Event()
        finished = threading.Event()

        def _slow(event):
            started.set()
            time.sleep(0.3)
            result = components.pipeline.process(event)
            finished.set()
            return result

        queue = OrphanedEventQueue(
            session_factory,
            processor=_slow,
            dead_letters=components.dead_letters,
            policy=RetryPolicy(jitter_seconds=0),
            clock=clock,
        )
        create_enrollment(db, enrollment_id="enr_s")
        queue.enqueue(make_event("enr_s", event_type="replied"))
        clock.advance(10)
        scheduler = OrphanedQueueScheduler(queue, interval=0.01)

        async def _run():
            scheduler.start()
            assert await asyncio.to_thread(started.wait, 10)
            await scheduler.stop()
            return finished.is_set(), queue.status()["processing"]

        done, processing = asyncio.run(_run())
        assert done is True
        assert processing is False
        assert reload_enrollment(db, "enr_s").replied_count == 1

    def test_tick_releases_stale_replays(self, db, components, clock):
        entry = components.dead_letters.record(make_event("enr_x", provider_event_id="e1"), reason="boom")
        components.dead_letters._transition(entry.id, DeadLetterStatus.replaying, "replay")
        clock.advance(components.dead_letters.replay_lease.total_seconds() + 1)

        scheduler = OrphanedQueueScheduler(components.queue, interval=0.01, dead_letters=components.dead_letters)
        asyncio.run(scheduler.tick())

        assert components.dead_letters.get(entry.id).status == DeadLetterStatus.failed
