"""Define the immutable work-item, requirements-document and sub-task records.

Every update is expressed as a builder that returns a new value; nothing in
this module assigns through an existing record. List-valued fields are held
as tuples so a record cannot be changed through a shared reference either.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterable, Optional

from .constants import SCHEMA_VERSION
from .errors import AlreadyTerminal
from .utils import _next_timestamp, _now_iso


class WorkflowState(str, Enum):
    """Closed set of pipeline states; ordering lives in ``states.py``."""

    IDEA = "idea"
    RESEARCHED = "researched"
    PLANNED = "planned"
    IMPLEMENTING = "implementing"
    IN_REVIEW = "in_review"
    DONE = "done"

    def __str__(self) -> str:
        return self.value


class PriorityHint(str, Enum):
    """Optional scheduling hint; higher ``rank`` is picked first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3, "critical": 4}[self.value]


class SubTaskStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _optional_tuple(value: Any) -> Optional[tuple[str, ...]]:
    if value is None:
        return None
    return _as_tuple(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text else None


# ---------------------------------------------------------------------------
# SubTask
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SubTask:
    id: str
    title: str
    acceptance_criteria: tuple[str, ...] = ()
    priority: int = 0
    status: SubTaskStatus = SubTaskStatus.PENDING
    notes: str = ""

    def is_done(self) -> bool:
        return self.status == SubTaskStatus.DONE

    def is_pending(self) -> bool:
        return self.status == SubTaskStatus.PENDING

    def with_status(self, status: SubTaskStatus) -> "SubTask":
        """Return a copy with ``status``; a done sub-task never goes back to pending."""
        status = SubTaskStatus(status)
        if self.is_done() and status == SubTaskStatus.PENDING:
            raise ValueError(f"Sub-task {self.id} is done and cannot return to pending")
        return replace(self, status=status)

    def with_notes(self, notes: str) -> "SubTask":
        return replace(self, notes=str(notes))

    def as_done(self) -> "SubTask":
        return self.with_status(SubTaskStatus.DONE)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "acceptance_criteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "status": self.status.value,
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SubTask":
        sub_id = str(data.get("id") or "").strip()
        if not sub_id:
            raise ValueError("Sub-task is missing an id")
        try:
            priority = int(data.get("priority") or 0)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Sub-task {sub_id} has a non-numeric priority") from exc
        return cls(
            id=sub_id,
            title=str(data.get("title") or ""),
            acceptance_criteria=_as_tuple(data.get("acceptance_criteria")),
            priority=priority,
            status=SubTaskStatus(str(data.get("status") or SubTaskStatus.PENDING.value)),
            notes=str(data.get("notes") or ""),
        )


# ---------------------------------------------------------------------------
# RequirementsDoc
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RequirementsDoc:
    """Structured list of sub-tasks that gates implementing and review."""

    id: str
    branch_name: str
    subtasks: tuple[SubTask, ...] = ()
    schema_version: int = SCHEMA_VERSION

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for subtask in self.subtasks:
            if subtask.id in seen:
                raise ValueError(f"Duplicate sub-task id '{subtask.id}' in requirements document {self.id}")
            seen.add(subtask.id)

    def get(self, subtask_id: str) -> Optional[SubTask]:
        for subtask in self.subtasks:
            if subtask.id == subtask_id:
                return subtask
        return None

    def all_subtasks_done(self) -> bool:
        if not self.subtasks:
            return False
        return all(s.is_done() for s in self.subtasks)

    def has_pending_subtasks(self) -> bool:
        return any(s.is_pending() for s in self.subtasks)

    def pending_subtasks(self) -> list[SubTask]:
        return ordered_subtasks(s for s in self.subtasks if s.is_pending())

    def next_pending_subtask(self) -> Optional[SubTask]:
        pending = self.pending_subtasks()
        return pending[0] if pending else None

    def with_subtask_status(self, subtask_id: str, status: SubTaskStatus) -> "RequirementsDoc":
        """Return a copy with one sub-task's status changed.

        An unknown ``subtask_id`` is not an error: the result equals the receiver.
        """
        if self.get(subtask_id) is None:
            return self
        return replace(
            self,
            subtasks=tuple(s.with_status(status) if s.id == subtask_id else s for s in self.subtasks),
        )

    def with_subtask(self, subtask: SubTask) -> "RequirementsDoc":
        """Insert ``subtask`` or replace the one sharing its id, keeping order."""
        if self.get(subtask.id) is None:
            return replace(self, subtasks=self.subtasks + (subtask,))
        return replace(
            self,
            subtasks=tuple(subtask if s.id == subtask.id else s for s in self.subtasks),
        )

    def with_subtask_done(self, subtask_id: str) -> "RequirementsDoc":
        return self.with_subtask_status(subtask_id, SubTaskStatus.DONE)

    def with_all_subtasks_done(self) -> "RequirementsDoc":
        return replace(self, subtasks=tuple(s.as_done() for s in self.subtasks))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "id": self.id,
            "branch_name": self.branch_name,
            "subtasks": [s.to_dict() for s in self.subtasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RequirementsDoc":
        raw_subtasks = data.get("subtasks")
        if raw_subtasks is None:
            raw_subtasks = []
        if not isinstance(raw_subtasks, list):
            raise ValueError("Requirements document 'subtasks' must be a list")
        subtasks = tuple(SubTask.from_dict(s) for s in raw_subtasks if isinstance(s, dict))
        return cls(
            id=str(data.get("id") or ""),
            branch_name=str(data.get("branch_name") or ""),
            subtasks=subtasks,
            schema_version=int(data.get("schema_version") or SCHEMA_VERSION),
        )


# ---------------------------------------------------------------------------
# Item
# ---------------------------------------------------------------------------

_PLANNING_LIST_FIELDS = (
    "success_criteria",
    "technical_constraints",
    "scope_in_scope",
    "scope_out_of_scope",
)
_PLANNING_TEXT_FIELDS = ("problem_statement", "motivation", "urgency_hint")


@dataclass(frozen=True)
class Item:
    """A unit of work tracked through the pipeline."""

    # Identity
    id: str
    title: str
    overview: str = ""
    section: Optional[str] = None
    state: WorkflowState = WorkflowState.IDEA

    # Execution tracking
    branch: Optional[str] = None
    review_url: Optional[str] = None
    review_number: Optional[int] = None
    last_error: Optional[str] = None

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = ""

    # Planning context (all optional)
    problem_statement: Optional[str] = None
    motivation: Optional[str] = None
    success_criteria: Optional[tuple[str, ...]] = None
    technical_constraints: Optional[tuple[str, ...]] = None
    scope_in_scope: Optional[tuple[str, ...]] = None
    scope_out_of_scope: Optional[tuple[str, ...]] = None
    priority_hint: Optional[PriorityHint] = None
    urgency_hint: Optional[str] = None

    schema_version: int = SCHEMA_VERSION

    def __post_init__(self) -> None:
        if not self.updated_at:
            object.__setattr__(self, "updated_at", self.created_at)

    @classmethod
    def new(
        cls,
        item_id: str,
        title: str,
        overview: str = "",
        *,
        section: Optional[str] = None,
        priority_hint: Optional[PriorityHint] = None,
    ) -> "Item":
        now = _now_iso()
        return cls(
            id=item_id,
            title=title,
            overview=overview,
            section=section,
            priority_hint=priority_hint,
            created_at=now,
            updated_at=now,
        )

    # -- queries ------------------------------------------------------------

    def is_done(self) -> bool:
        return self.state == WorkflowState.DONE

    @property
    def priority_rank(self) -> int:
        return self.priority_hint.rank if self.priority_hint else 0

    # -- builders -----------------------------------------------------------

    def _touch(self, **changes: Any) -> "Item":
        if self.is_done():
            raise AlreadyTerminal(self.state.value)
        return replace(self, updated_at=_next_timestamp(self.updated_at), **changes)

    def with_state(self, state: WorkflowState) -> "Item":
        return self._touch(state=WorkflowState(state))

    def with_branch(self, branch: Optional[str]) -> "Item":
        return self._touch(branch=branch)

    def with_review(self, url: Optional[str], number: Optional[int]) -> "Item":
        return self._touch(review_url=url, review_number=number)

    def with_error(self, message: Optional[str]) -> "Item":
        return self._touch(last_error=message)

    def with_updated_timestamp(self) -> "Item":
        return self._touch()

    # -- serialization ------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "schema_version": self.schema_version,
            "id": self.id,
            "title": self.title,
        }
        if self.section is not None:
            data["section"] = self.section
        data.update(
            {
                "state": self.state.value,
                "overview": self.overview,
                "branch": self.branch,
                "review_url": self.review_url,
                "review_number": self.review_number,
                "last_error": self.last_error,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )
        for name in _PLANNING_TEXT_FIELDS[:2]:
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        for name in _PLANNING_LIST_FIELDS:
            value = getattr(self, name)
            if value is not None:
                data[name] = list(value)
        if self.priority_hint is not None:
            data["priority_hint"] = self.priority_hint.value
        if self.urgency_hint is not None:
            data["urgency_hint"] = self.urgency_hint
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Item":
        """Create an ``Item`` from its persisted dictionary.

        Raises:
            ValueError: If ``id`` is missing or ``state`` / ``priority_hint``
                hold values outside their enumerations.
        """
        item_id = str(data.get("id") or "").strip()
        if not item_id:
            raise ValueError("Item is missing an id")
        created_at = str(data.get("created_at") or _now_iso())
        review_number = data.get("review_number")
        hint = data.get("priority_hint")
        return cls(
            id=item_id,
            title=str(data.get("title") or ""),
            overview=str(data.get("overview") or ""),
            section=_optional_str(data.get("section")),
            state=WorkflowState(str(data.get("state") or WorkflowState.IDEA.value)),
            branch=_optional_str(data.get("branch")),
            review_url=_optional_str(data.get("review_url")),
            review_number=int(review_number) if review_number is not None else None,
            last_error=_optional_str(data.get("last_error")),
            created_at=created_at,
            updated_at=str(data.get("updated_at") or created_at),
            problem_statement=_optional_str(data.get("problem_statement")),
            motivation=_optional_str(data.get("motivation")),
            success_criteria=_optional_tuple(data.get("success_criteria")),
            technical_constraints=_optional_tuple(data.get("technical_constraints")),
            scope_in_scope=_optional_tuple(data.get("scope_in_scope")),
            scope_out_of_scope=_optional_tuple(data.get("scope_out_of_scope")),
            priority_hint=PriorityHint(str(hint)) if hint else None,
            urgency_hint=_optional_str(data.get("urgency_hint")),
            schema_version=int(data.get("schema_version") or SCHEMA_VERSION),
        )


def parse_state(value: Optional[str]) -> Optional[WorkflowState]:
    """Parse a state string, returning ``None`` for unknown values."""
    if value is None:
        return None
    try:
        return WorkflowState(str(value).strip().lower())
    except ValueError:
        return None


def ordered_subtasks(subtasks: Iterable[SubTask]) -> list[SubTask]:
    return sorted(subtasks, key=lambda s: (s.priority, s.id))
