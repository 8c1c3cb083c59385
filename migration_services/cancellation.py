"""Cooperative cancellation shared by the orchestrator and the importer."""

from __future__ import annotations

import threading


class CancellationToken:
    """
    Set once by ``cancel()``; checked between chunks and batches, never
    inside one.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "canceled by request") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
