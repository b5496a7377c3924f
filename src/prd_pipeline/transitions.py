"""Apply a single forward transition to an item."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .errors import AlreadyTerminal, NonAdjacentTransition, PipelineError, ValidationFailed
from .models import Item, WorkflowState
from .states import is_terminal, next_state
from .validation import NON_ADJACENT_TRANSITION, EvidenceSnapshot, validate_transition


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of ``apply_transition``: exactly one of ``item`` / ``error`` is set."""

    item: Optional[Item] = None
    error: Optional[PipelineError] = None

    @property
    def is_success(self) -> bool:
        return self.error is None and self.item is not None


def apply_transition(item: Item, evidence: EvidenceSnapshot) -> TransitionResult:
    """Advance ``item`` by exactly one state if the evidence allows it.

    The input item is never modified. On rejection the caller keeps the
    original state and may record the reason through ``Item.with_error``.
    """
    target = next_state(item.state)
    if target is None:
        return TransitionResult(error=AlreadyTerminal(item.state.value))

    result = validate_transition(item.state, target, evidence)
    if not result.valid:
        logger.debug("Item {} rejected {} -> {}: {}", item.id, item.state.value, target.value, result.reason)
        if result.code == NON_ADJACENT_TRANSITION:
            return TransitionResult(error=NonAdjacentTransition(item.state.value, target.value))
        return TransitionResult(error=ValidationFailed(result.code or "", result.reason or ""))

    return TransitionResult(item=item.with_state(target))


def transition_to(item: Item, target: WorkflowState, evidence: EvidenceSnapshot) -> TransitionResult:
    """Like ``apply_transition``, but the caller names the state it expects to reach.

    A target other than the immediate successor is rejected before any
    evidence is inspected.
    """
    if is_terminal(item.state):
        return TransitionResult(error=AlreadyTerminal(item.state.value))
    target = WorkflowState(target)
    if target != next_state(item.state):
        return TransitionResult(error=NonAdjacentTransition(item.state.value, target.value))
    return apply_transition(item, evidence)
