"""Phase transition table, derived status and counter rules."""

import pytest

from migration_jobs.domain.types import (
    TERMINAL_PHASES,
    TRANSITIONS,
    WORKING_PHASES,
    JobCounters,
    JobStatus,
    Phase,
    can_transition,
    next_phase,
    status_for,
)


class TestTransitions:
    def test_every_phase_has_an_entry(self):
        assert set(TRANSITIONS) == set(Phase)

    def test_pending_starts_discovery_or_cancels(self):
        assert TRANSITIONS[Phase.PENDING] == {Phase.DISCOVERY, Phase.CANCELED}

    @pytest.mark.parametrize("phase", WORKING_PHASES)
    def test_working_phase_moves_forward_fails_or_cancels(self, phase):
        assert TRANSITIONS[phase] == {next_phase(phase), Phase.FAILED, Phase.CANCELED}

    @pytest.mark.parametrize("phase", sorted(TERMINAL_PHASES, key=lambda p: p.value))
    def test_terminal_phases_have_no_exits(self, phase):
        assert TRANSITIONS[phase] == frozenset()
        assert next_phase(phase) is None

    def test_phases_cannot_be_skipped_or_reversed(self):
        assert not can_transition(Phase.EXTRACTION, Phase.VALIDATION)
        assert not can_transition(Phase.IMPORT, Phase.TRANSFORMATION)
        assert not can_transition(Phase.PENDING, Phase.FAILED)

    def test_pipeline_order(self):
        phase = Phase.PENDING
        seen = []
        while phase is not None:
            seen.append(phase)
            phase = next_phase(phase)
        assert seen == [
            Phase.PENDING, Phase.DISCOVERY, Phase.EXTRACTION, Phase.TRANSFORMATION,
            Phase.VALIDATION, Phase.IMPORT, Phase.VERIFICATION, Phase.COMPLETED,
        ]


class TestStatus:
    @pytest.mark.parametrize("phase, status", [
        (Phase.PENDING, JobStatus.PENDING),
        (Phase.IMPORT, JobStatus.RUNNING),
        (Phase.COMPLETED, JobStatus.COMPLETED),
        (Phase.FAILED, JobStatus.FAILED),
        (Phase.CANCELED, JobStatus.CANCELED),
    ])
    def test_status_for(self, phase, status):
        assert status_for(phase) == status


class TestJobCounters:
    def test_incremented_returns_new_value(self):
        counters = JobCounters()
        bumped = counters.incremented("imported", 5)
        assert bumped.imported == 5
        assert counters.imported == 0

    def test_counters_never_decrease(self):
        with pytest.raises(ValueError):
            JobCounters().incremented("failed", -1)

    def test_unknown_counter(self):
        with pytest.raises(ValueError):
            JobCounters().incremented("skipped")

    def test_dict_round_trip_tolerates_missing_keys(self):
        assert JobCounters.from_dict({"imported": "3"}) == JobCounters(imported=3)
        assert JobCounters.from_dict(None) == JobCounters()
