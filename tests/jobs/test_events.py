"""EventDispatcher delivery order and listener isolation."""

import threading
from datetime import datetime, timezone

from migration_jobs import EventDispatcher
from migration_jobs.domain.types import JobEvent, JobEventType, Phase

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _event(n: int) -> JobEvent:
    return JobEvent(
        event_type=JobEventType.PROGRESS,
        job_id="job-1",
        phase=Phase.IMPORT,
        occurred_at=NOW,
        payload={"processed": n},
    )


class TestEventDispatcher:
    def test_events_arrive_in_emission_order(self):
        dispatcher = EventDispatcher()
        seen = []
        dispatcher.add_listener(lambda e: seen.append(e.payload["processed"]))
        for n in range(50):
            dispatcher.emit(_event(n))
        dispatcher.flush()
        dispatcher.close()
        assert seen == list(range(50))

    def test_listeners_run_off_the_emitting_thread(self):
        dispatcher = EventDispatcher()
        threads = []
        dispatcher.add_listener(lambda e: threads.append(threading.current_thread().name))
        dispatcher.emit(_event(1))
        dispatcher.flush()
        dispatcher.close()
        assert threads == ["job-events"]

    def test_failing_listener_does_not_stall_others(self, captured_logs):
        dispatcher = EventDispatcher()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        dispatcher.add_listener(broken)
        dispatcher.add_listener(lambda e: seen.append(e.payload["processed"]))
        dispatcher.emit(_event(1))
        dispatcher.emit(_event(2))
        dispatcher.flush()
        dispatcher.close()

        assert seen == [1, 2]
        failures = [r for r in captured_logs() if r["message"] == "job_event_listener_failed"]
        assert len(failures) == 2

    def test_removed_listener_is_not_called(self):
        dispatcher = EventDispatcher()
        seen = []
        listener = seen.append
        dispatcher.add_listener(listener)
        dispatcher.emit(_event(1))
        dispatcher.flush()
        dispatcher.remove_listener(listener)
        dispatcher.remove_listener(listener)
        dispatcher.emit(_event(2))
        dispatcher.flush()
        dispatcher.close()
        assert [e.payload["processed"] for e in seen] == [1]

    def test_emit_after_close_restarts_worker(self):
        dispatcher = EventDispatcher()
        seen = []
        dispatcher.add_listener(seen.append)
        dispatcher.emit(_event(1))
        dispatcher.flush()
        dispatcher.close()
        dispatcher.emit(_event(2))
        dispatcher.flush()
        dispatcher.close()
        assert len(seen) == 2

    def test_flush_and_close_without_events(self):
        dispatcher = EventDispatcher()
        dispatcher.flush()
        dispatcher.close()
