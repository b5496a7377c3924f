"""Validate candidate transitions against observed evidence.

Everything here is pure: the functions inspect an ``EvidenceSnapshot`` that the
orchestrator builds from freshly observed artifacts and return a
``ValidationResult``. Nothing reads files, calls git, or caches state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .models import RequirementsDoc, WorkflowState
from .states import next_state

NON_ADJACENT_TRANSITION = "non_adjacent_transition"
MISSING_RESEARCH_ARTIFACT = "missing_research_artifact"
MISSING_PLAN_ARTIFACT = "missing_plan_artifact"
MISSING_REQUIREMENTS_DOC = "missing_requirements_doc"
REQUIREMENTS_DOC_EMPTY = "requirements_doc_empty"
NO_PENDING_SUBTASKS = "no_pending_subtasks"
SUBTASKS_INCOMPLETE = "subtasks_incomplete"
NO_REVIEW_REQUEST = "no_review_request"
REVIEW_REQUEST_NOT_MERGED = "review_request_not_merged"

REASONS: dict[str, str] = {
    NON_ADJACENT_TRANSITION: "non-adjacent transition",
    MISSING_RESEARCH_ARTIFACT: "missing research artifact",
    MISSING_PLAN_ARTIFACT: "missing plan artifact",
    MISSING_REQUIREMENTS_DOC: "missing requirements document",
    REQUIREMENTS_DOC_EMPTY: "requirements document has no sub-tasks",
    NO_PENDING_SUBTASKS: "no pending sub-tasks",
    SUBTASKS_INCOMPLETE: "sub-tasks incomplete",
    NO_REVIEW_REQUEST: "no review request",
    REVIEW_REQUEST_NOT_MERGED: "review request not merged",
}


@dataclass(frozen=True)
class EvidenceSnapshot:
    """Artifact-derived facts consulted for a single transition decision."""

    has_research_doc: bool = False
    has_plan_doc: bool = False
    requirements_doc: Optional[RequirementsDoc] = None
    has_review_request: bool = False
    review_request_merged: bool = False


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    code: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def reject(cls, code: str) -> "ValidationResult":
        return cls(valid=False, code=code, reason=REASONS[code])

    def __bool__(self) -> bool:
        return self.valid


def can_enter_researched(evidence: EvidenceSnapshot) -> ValidationResult:
    if not evidence.has_research_doc:
        return ValidationResult.reject(MISSING_RESEARCH_ARTIFACT)
    return ValidationResult.accept()


def can_enter_planned(evidence: EvidenceSnapshot) -> ValidationResult:
    if not evidence.has_plan_doc:
        return ValidationResult.reject(MISSING_PLAN_ARTIFACT)
    if evidence.requirements_doc is None:
        return ValidationResult.reject(MISSING_REQUIREMENTS_DOC)
    if not evidence.requirements_doc.subtasks:
        return ValidationResult.reject(REQUIREMENTS_DOC_EMPTY)
    return ValidationResult.accept()


def can_enter_implementing(evidence: EvidenceSnapshot) -> ValidationResult:
    doc = evidence.requirements_doc
    if doc is None or not doc.has_pending_subtasks():
        return ValidationResult.reject(NO_PENDING_SUBTASKS)
    return ValidationResult.accept()


def can_enter_in_review(evidence: EvidenceSnapshot) -> ValidationResult:
    doc = evidence.requirements_doc
    if doc is None or not doc.all_subtasks_done():
        return ValidationResult.reject(SUBTASKS_INCOMPLETE)
    if not evidence.has_review_request:
        return ValidationResult.reject(NO_REVIEW_REQUEST)
    return ValidationResult.accept()


def can_enter_done(evidence: EvidenceSnapshot) -> ValidationResult:
    if not (evidence.has_review_request and evidence.review_request_merged):
        return ValidationResult.reject(REVIEW_REQUEST_NOT_MERGED)
    return ValidationResult.accept()


_PREDICATES: dict[WorkflowState, Callable[[EvidenceSnapshot], ValidationResult]] = {
    WorkflowState.RESEARCHED: can_enter_researched,
    WorkflowState.PLANNED: can_enter_planned,
    WorkflowState.IMPLEMENTING: can_enter_implementing,
    WorkflowState.IN_REVIEW: can_enter_in_review,
    WorkflowState.DONE: can_enter_done,
}


def validate_transition(
    current: WorkflowState,
    target: WorkflowState,
    evidence: EvidenceSnapshot,
) -> ValidationResult:
    """Decide whether ``current -> target`` is legal given ``evidence``.

    Adjacency is checked before content, so a skip or a backward move is
    rejected even when the evidence would satisfy the target's predicate.
    ``done`` has no successor, so every move out of it is non-adjacent.
    """
    current = WorkflowState(current)
    target = WorkflowState(target)
    if target != next_state(current):
        return ValidationResult.reject(NON_ADJACENT_TRANSITION)
    return _PREDICATES[target](evidence)
