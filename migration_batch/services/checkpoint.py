"""
ContiguousCheckpoint -- resume point over out-of-order batch completion.

Batches finish in any order under the worker pool, but a resume must never
skip an uncommitted batch.  The checkpoint therefore only advances through
the highest sequence below which every batch has completed.

Example: from sequence 0, completions arrive as 1, 0, 3, 2.
    complete(1) -> no advance (0 outstanding)
    complete(0) -> advances to 1 (covers 0 and 1)
    complete(3) -> no advance (2 outstanding)
    complete(2) -> advances to 3
"""

from __future__ import annotations

from dataclasses import dataclass

from migration_batch.domain.types import BatchOutcome


@dataclass(frozen=True)
class CheckpointAdvance:
    """Newly covered batches after one completion."""

    sequence: int  # highest contiguous completed sequence
    records_through: int  # resume offset into the valid-record stream
    outcomes: tuple[BatchOutcome, ...]  # in sequence order


class ContiguousCheckpoint:
    def __init__(self, start_sequence: int = 0, start_offset: int = 0):
        self._next = start_sequence
        self._pending: dict[int, BatchOutcome] = {}
        self.sequence = start_sequence - 1
        self.records_through = start_offset

    @property
    def outstanding(self) -> int:
        """Completed batches waiting on an earlier sequence."""
        return len(self._pending)

    def complete(self, outcome: BatchOutcome) -> CheckpointAdvance | None:
        if outcome.sequence < self._next or outcome.sequence in self._pending:
            raise ValueError(f"batch {outcome.sequence} completed twice")
        self._pending[outcome.sequence] = outcome
        covered: list[BatchOutcome] = []
        while self._next in self._pending:
            done = self._pending.pop(self._next)
            covered.append(done)
            self.sequence = done.sequence
            self.records_through = done.records_through
            self._next += 1
        if not covered:
            return None
        return CheckpointAdvance(
            sequence=self.sequence,
            records_through=self.records_through,
            outcomes=tuple(covered),
        )
