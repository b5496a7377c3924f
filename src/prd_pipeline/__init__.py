"""Provide the public `prd_pipeline` package exports."""

from __future__ import annotations

from .errors import PipelineError
from .models import Item, PriorityHint, RequirementsDoc, SubTask, SubTaskStatus, WorkflowState
from .orchestrator import Orchestrator, Phase, RunOptions, next_phase
from .states import allowed_next_states, is_terminal, next_state
from .transitions import TransitionResult, apply_transition
from .validation import EvidenceSnapshot, ValidationResult, validate_transition

__all__ = [
    "EvidenceSnapshot",
    "Item",
    "Orchestrator",
    "Phase",
    "PipelineError",
    "PriorityHint",
    "RequirementsDoc",
    "RunOptions",
    "SubTask",
    "SubTaskStatus",
    "TransitionResult",
    "ValidationResult",
    "WorkflowState",
    "allowed_next_states",
    "apply_transition",
    "is_terminal",
    "next_phase",
    "next_state",
    "validate_transition",
]
