"""Test the workflow state ordering."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from prd_pipeline.models import WorkflowState
from prd_pipeline.states import WORKFLOW_STATES, allowed_next_states, is_terminal, next_state, state_index


def test_states_are_totally_ordered() -> None:
    assert [state_index(s) for s in WORKFLOW_STATES] == [0, 1, 2, 3, 4, 5]
    assert WORKFLOW_STATES[0] == WorkflowState.IDEA
    assert WORKFLOW_STATES[-1] == WorkflowState.DONE


@pytest.mark.parametrize("state", list(WorkflowState))
def test_allowed_next_states_has_one_member_unless_done(state: WorkflowState) -> None:
    allowed = allowed_next_states(state)
    if state == WorkflowState.DONE:
        assert allowed == frozenset()
    else:
        assert len(allowed) == 1
        assert allowed == {next_state(state)}


@pytest.mark.parametrize(
    "state,expected",
    [
        (WorkflowState.IDEA, WorkflowState.RESEARCHED),
        (WorkflowState.RESEARCHED, WorkflowState.PLANNED),
        (WorkflowState.PLANNED, WorkflowState.IMPLEMENTING),
        (WorkflowState.IMPLEMENTING, WorkflowState.IN_REVIEW),
        (WorkflowState.IN_REVIEW, WorkflowState.DONE),
        (WorkflowState.DONE, None),
    ],
)
def test_next_state(state: WorkflowState, expected: WorkflowState | None) -> None:
    assert next_state(state) == expected


def test_only_done_is_terminal() -> None:
    assert [s for s in WorkflowState if is_terminal(s)] == [WorkflowState.DONE]


def test_state_accepts_wire_value() -> None:
    assert next_state("planned") == WorkflowState.IMPLEMENTING


def test_unknown_state_string_is_rejected() -> None:
    with pytest.raises(ValueError):
        WorkflowState("in_pr")
