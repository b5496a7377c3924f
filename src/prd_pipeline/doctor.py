"""Check stored items for states that their artifacts no longer support."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .constants import ITEM_FILE, PLAN_FILE, REQUIREMENTS_DOC_FILE, RESEARCH_FILE
from .errors import StorageError
from .models import WorkflowState
from .states import state_index
from .storage import FileItemStore


@dataclass(frozen=True)
class Diagnostic:
    item_id: Optional[str]
    code: str
    message: str
    fixable: bool = False


def _state_at_least(state: WorkflowState, floor: WorkflowState) -> bool:
    return state_index(state) >= state_index(floor)


def diagnose(store: FileItemStore) -> list[Diagnostic]:
    findings: list[Diagnostic] = []
    if store.items_dir.exists():
        for entry in sorted(store.items_dir.iterdir()):
            if not entry.is_dir():
                continue
            if not (entry / ITEM_FILE).exists():
                findings.append(Diagnostic(entry.name, "missing_item_file", f"{entry.name} has no {ITEM_FILE}"))
                continue
            try:
                item = store.read_item(entry.name)
            except StorageError as exc:
                findings.append(Diagnostic(entry.name, "unreadable_item", str(exc)))
                continue
            if item.id != entry.name:
                findings.append(
                    Diagnostic(entry.name, "id_mismatch", f"directory {entry.name} holds item {item.id}")
                )
            if _state_at_least(item.state, WorkflowState.RESEARCHED) and not store.artifact_exists(item.id, RESEARCH_FILE):
                findings.append(Diagnostic(item.id, "missing_research", f"{item.id} is {item.state.value} without {RESEARCH_FILE}"))
            if _state_at_least(item.state, WorkflowState.PLANNED):
                if not store.artifact_exists(item.id, PLAN_FILE):
                    findings.append(Diagnostic(item.id, "missing_plan", f"{item.id} is {item.state.value} without {PLAN_FILE}"))
                doc = store.read_requirements_doc(item.id)
                if doc is None:
                    findings.append(
                        Diagnostic(item.id, "missing_requirements_doc", f"{item.id} is {item.state.value} without a valid {REQUIREMENTS_DOC_FILE}")
                    )
                elif not doc.subtasks:
                    findings.append(Diagnostic(item.id, "requirements_doc_empty", f"{item.id} has no sub-tasks"))
            if _state_at_least(item.state, WorkflowState.IN_REVIEW) and not item.review_url:
                findings.append(Diagnostic(item.id, "missing_review_request", f"{item.id} is {item.state.value} without a review request"))

    index = store.read_index()
    expected = {item.id: item.state.value for item in store.list_items()}
    indexed = {}
    if index is not None:
        indexed = {
            str(entry.get("id")): str(entry.get("state"))
            for entry in index.get("items", [])
            if isinstance(entry, dict)
        }
    if indexed != expected:
        findings.append(Diagnostic(None, "stale_index", "index.json does not match stored items", fixable=True))
    return findings


def fix(store: FileItemStore, findings: list[Diagnostic]) -> int:
    """Apply the fixable findings; returns how many were fixed."""
    fixed = 0
    if any(f.code == "stale_index" for f in findings):
        store.refresh_index()
        logger.info("Rebuilt index.json")
        fixed += 1
    return fixed
