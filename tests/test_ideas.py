from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from prd_pipeline.ideas import ingest_ideas, parse_ideas
from prd_pipeline.models import Item, WorkflowState
from prd_pipeline.storage import InMemoryItemStore


def test_parse_ideas_strips_bullets_and_headings() -> None:
    text = """# Backlog

- Add dark mode
* Export to CSV
1. Rate limit the API
2) Audit log

   plain line
"""
    assert parse_ideas(text) == [
        "Add dark mode",
        "Export to CSV",
        "Rate limit the API",
        "Audit log",
        "plain line",
    ]


def test_parse_ideas_empty() -> None:
    assert parse_ideas("\n\n# only a heading\n") == []


def test_ingest_creates_numbered_items() -> None:
    store = InMemoryItemStore()
    created = ingest_ideas(store, "- Add dark mode\n- Export to CSV!\n")
    assert [item.id for item in created] == ["001-add-dark-mode", "002-export-to-csv"]
    stored = store.read_item("001-add-dark-mode")
    assert stored.state == WorkflowState.IDEA
    assert stored.title == "Add dark mode"
    assert stored.overview == "Add dark mode"


def test_ingest_continues_numbering_after_existing_items() -> None:
    store = InMemoryItemStore()
    store.write_item(Item.new("007-existing", "Existing"))
    created = ingest_ideas(store, "New thing")
    assert [item.id for item in created] == ["008-new-thing"]


def test_ingest_skips_duplicate_titles() -> None:
    store = InMemoryItemStore()
    store.write_item(Item.new("001-add-dark-mode", "Add dark mode"))
    created = ingest_ideas(store, "- add DARK mode\n- Audit log\n- Audit log\n")
    assert [item.title for item in created] == ["Audit log"]
    assert len(store.list_items()) == 2
