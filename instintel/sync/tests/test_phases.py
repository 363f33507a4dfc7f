#!/usr/bin/env python3
"""
Unit tests for the sync phase machine and checkpoint log.
"""

import tempfile

import pytest

from ..error_tracker import InvalidTransition
from ..phases import CheckpointLog, PhaseMachine, SyncPhase, TRANSITIONS, transition


class TestTransitions:

    def test_happy_path(self):
        phase = SyncPhase.IDLE
        for target in (SyncPhase.FETCHING, SyncPhase.EXTRACTING, SyncPhase.PREVIEW,
                       SyncPhase.IMPORTING, SyncPhase.COMPLETE, SyncPhase.IDLE):
            phase = transition(phase, target)
        assert phase == SyncPhase.IDLE

    @pytest.mark.parametrize("phase", [
        SyncPhase.IDLE, SyncPhase.FETCHING, SyncPhase.EXTRACTING, SyncPhase.PREVIEW, SyncPhase.IMPORTING
    ])
    def test_error_reachable_from_active_phases(self, phase):
        assert transition(phase, SyncPhase.ERROR) == SyncPhase.ERROR

    @pytest.mark.parametrize("current,target", [
        (SyncPhase.IDLE, SyncPhase.PREVIEW),
        (SyncPhase.FETCHING, SyncPhase.IMPORTING),
        (SyncPhase.PREVIEW, SyncPhase.COMPLETE),
        (SyncPhase.COMPLETE, SyncPhase.FETCHING),
        (SyncPhase.ERROR, SyncPhase.IMPORTING),
        (SyncPhase.COMPLETE, SyncPhase.ERROR),
    ])
    def test_invalid_transitions(self, current, target):
        with pytest.raises(InvalidTransition):
            transition(current, target)

    def test_terminal_phases_only_restart(self):
        assert TRANSITIONS[SyncPhase.COMPLETE] == frozenset({SyncPhase.IDLE})
        assert TRANSITIONS[SyncPhase.ERROR] == frozenset({SyncPhase.IDLE})


class TestPhaseMachine:
    """Test progress emission and checkpointing."""

    @pytest.fixture
    def checkpoints(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            yield CheckpointLog(temp_dir)

    def test_advance_emits_and_checkpoints(self, checkpoints):
        events = []
        machine = PhaseMachine("inst-1", "run-1", on_progress=events.append, checkpoints=checkpoints)

        machine.advance(SyncPhase.FETCHING, 10, "Fetching website content...")
        machine.announce(20, "Still fetching")
        machine.advance(SyncPhase.EXTRACTING, 30, "Analyzing content with AI...")

        assert [(e.phase, e.progress) for e in events] == [
            (SyncPhase.FETCHING, 10), (SyncPhase.FETCHING, 20), (SyncPhase.EXTRACTING, 30)
        ]
        rows = checkpoints.read_checkpoints("inst-1")
        assert [r['phase'] for r in rows] == ["fetching", "extracting"]
        assert rows[0]['run_id'] == "run-1"
        assert checkpoints.latest("inst-1")['progress'] == 30
        assert checkpoints.read_checkpoints("other") == []

    def test_invalid_advance_leaves_phase_unchanged(self):
        machine = PhaseMachine("inst-1", "run-1")

        with pytest.raises(InvalidTransition):
            machine.advance(SyncPhase.IMPORTING, 60, "Creating divisions...")

        assert machine.phase == SyncPhase.IDLE

    def test_fail_records_error_once(self, checkpoints):
        events = []
        machine = PhaseMachine("inst-1", "run-1", on_progress=events.append, checkpoints=checkpoints)
        machine.advance(SyncPhase.FETCHING, 10, "Fetching website content...")

        machine.fail("boom")
        machine.fail("boom again")

        assert machine.phase == SyncPhase.ERROR
        assert events[-1].error == "boom"
        assert events[-1].progress == 0
        assert len(events) == 2
        assert checkpoints.latest("inst-1")['details']['error'] == "boom"

    def test_raising_callback_is_tolerated(self):
        def callback(event):
            raise RuntimeError("listener crashed")

        machine = PhaseMachine("inst-1", "run-1", on_progress=callback)
        machine.advance(SyncPhase.FETCHING, 10, "Fetching website content...")

        assert machine.phase == SyncPhase.FETCHING

    def test_malformed_checkpoint_lines_skipped(self, checkpoints):
        checkpoints.write_checkpoint("inst-1", "run-1", SyncPhase.FETCHING, 10)
        with open(checkpoints.filepath, "a", encoding="utf-8") as f:
            f.write("not json\n")

        assert len(checkpoints.read_checkpoints()) == 1
