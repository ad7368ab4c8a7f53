"""Tests for RunState reducers and the run status vocabulary."""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from state import (
    MAX_BUFFERED_EVENTS,
    MAX_RUN_RECORDS,
    STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    RunState,
    merge_outputs,
)


class TestRunState:
    def test_merge_outputs_keeps_both_sides(self):
        merged = merge_outputs({"a": 1}, {"b": 2})
        assert merged == {"a": 1, "b": 2}

    def test_merge_outputs_does_not_mutate_left(self):
        left = {"a": 1}
        merge_outputs(left, {"a": 2})
        assert left == {"a": 1}

    def test_merge_outputs_handles_missing_sides(self):
        assert merge_outputs(None, {"a": 1}) == {"a": 1}
        assert merge_outputs({"a": 1}, None) == {"a": 1}

    def test_state_is_typed_dict(self):
        """RunState should be instantiable as a plain dict."""
        state: RunState = {
            "run_id": "x",
            "step_outputs": {},
            "artifact": None,
            "clarification": None,
            "usage": [],
        }
        assert state["run_id"] == "x"


class TestStatusVocabulary:
    def test_limits(self):
        assert MAX_RUN_RECORDS == 50
        assert MAX_BUFFERED_EVENTS == 200

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert STATUS_TRANSITIONS[status] == set()

    def test_completed_is_reachable_only_from_running(self):
        sources = {s for s, targets in STATUS_TRANSITIONS.items() if "completed" in targets}
        assert sources == {"running"}

    def test_every_live_status_can_fail(self):
        for status, targets in STATUS_TRANSITIONS.items():
            if status not in TERMINAL_STATUSES:
                assert "failed" in targets
