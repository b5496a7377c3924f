"""Total order over workflow states."""

from __future__ import annotations

from typing import Optional

from .models import WorkflowState

WORKFLOW_STATES: tuple[WorkflowState, ...] = (
    WorkflowState.IDEA,
    WorkflowState.RESEARCHED,
    WorkflowState.PLANNED,
    WorkflowState.IMPLEMENTING,
    WorkflowState.IN_REVIEW,
    WorkflowState.DONE,
)


def state_index(state: WorkflowState) -> int:
    return WORKFLOW_STATES.index(WorkflowState(state))


def next_state(state: WorkflowState) -> Optional[WorkflowState]:
    """Return the state immediately after ``state``, or ``None`` for ``done``."""
    index = state_index(state)
    if index + 1 >= len(WORKFLOW_STATES):
        return None
    return WORKFLOW_STATES[index + 1]


def allowed_next_states(state: WorkflowState) -> frozenset[WorkflowState]:
    successor = next_state(state)
    if successor is None:
        return frozenset()
    return frozenset({successor})


def is_terminal(state: WorkflowState) -> bool:
    return WorkflowState(state) == WorkflowState.DONE
