"""
EventDispatcher -- delivers job events to listeners off the job's thread.

The state machine only enqueues; a single daemon worker calls listeners in
emission order.  A failing listener is logged and skipped, it never stalls
the job or the other listeners.
"""

from __future__ import annotations

import queue
import threading
from collections.abc import Callable

from migration_jobs.domain.types import JobEvent
from migration_kernel.logging_config import get_logger

logger = get_logger("jobs.events")

Listener = Callable[[JobEvent], None]

_STOP = object()


class EventDispatcher:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._listeners_lock = threading.Lock()
        self._queue: queue.Queue[object] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    def add_listener(self, listener: Listener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def emit(self, event: JobEvent) -> None:
        self._ensure_started()
        self._queue.put(event)

    def flush(self) -> None:
        """Block until every queued event has been delivered."""
        if self._thread is not None:
            self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        with self._start_lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread.is_alive():
            self._queue.put(_STOP)
            thread.join(timeout=timeout)

    def _ensure_started(self) -> None:
        with self._start_lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(
                target=self._run, name="job-events", daemon=True
            )
            self._thread.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                with self._listeners_lock:
                    listeners = list(self._listeners)
                for listener in listeners:
                    try:
                        listener(item)
                    except Exception:
                        logger.exception(
                            "job_event_listener_failed",
                            extra={"event_type": item.event_type.value, "job_id": item.job_id},
                        )
            finally:
                self._queue.task_done()
