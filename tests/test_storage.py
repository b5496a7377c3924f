"""Test the file-backed and in-memory item stores."""

from __future__ import annotations

import json
import sys
import threading
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from prd_pipeline.constants import EVENTS_FILE, INDEX_FILE, REQUIREMENTS_DOC_FILE, RESEARCH_FILE, STATE_DIR_NAME
from prd_pipeline.errors import RepoNotFound, StorageError
from prd_pipeline.models import Item, RequirementsDoc, SubTask
from prd_pipeline.storage import FileItemStore, InMemoryItemStore, find_repo_root


@pytest.fixture
def store(tmp_path: Path) -> FileItemStore:
    (tmp_path / ".git").mkdir()
    file_store = FileItemStore(tmp_path)
    file_store.ensure_layout()
    return file_store


class TestFileItemStore:
    def test_write_then_read_item(self, store: FileItemStore) -> None:
        item = Item.new("001-demo", "Demo", "Overview")
        store.write_item(item)
        assert store.read_item("001-demo") == item
        assert store.list_items() == [item]

    def test_missing_item_raises_storage_error(self, store: FileItemStore) -> None:
        with pytest.raises(StorageError):
            store.read_item("404-missing")

    def test_corrupt_item_raises_storage_error(self, store: FileItemStore) -> None:
        path = store.item_path("001-bad") / "item.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            store.read_item("001-bad")

    def test_list_items_skips_unreadable(self, store: FileItemStore) -> None:
        store.write_item(Item.new("001-good", "Good"))
        bad = store.item_path("002-bad") / "item.json"
        bad.parent.mkdir(parents=True)
        bad.write_text("[]", encoding="utf-8")
        assert [item.id for item in store.list_items()] == ["001-good"]

    def test_invalid_item_ids_rejected(self, store: FileItemStore) -> None:
        for bad in ("", "..", "a/b"):
            with pytest.raises(StorageError):
                store.item_path(bad)

    def test_write_item_refreshes_index(self, store: FileItemStore) -> None:
        store.write_item(Item.new("001-demo", "Demo"))
        index = json.loads((store.state_dir / INDEX_FILE).read_text(encoding="utf-8"))
        assert index["items"] == [{"id": "001-demo", "state": "idea", "title": "Demo"}]
        assert index["schema_version"] == 1

    def test_concurrent_writers_keep_index_consistent(self, store: FileItemStore) -> None:
        errors: list[Exception] = []

        def _writer(worker: int) -> None:
            try:
                for n in range(20):
                    store.write_item(Item.new(f"{worker}-{n:02d}", f"Item {worker}.{n}"))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_writer, args=(w,)) for w in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        store.refresh_index()
        index = json.loads((store.state_dir / INDEX_FILE).read_text(encoding="utf-8"))
        assert len(index["items"]) == 80
        assert list(store.state_dir.rglob("*.tmp")) == []

    def test_failed_index_refresh_keeps_item_write(
        self, store: FileItemStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def _broken_refresh() -> None:
            raise StorageError("Unable to write index: disk full")

        monkeypatch.setattr(store, "refresh_index", _broken_refresh)
        item = Item.new("001-demo", "Demo")
        store.write_item(item)
        assert store.read_item("001-demo") == item

    def test_atomic_write_leaves_no_temp_files(self, store: FileItemStore) -> None:
        store.write_item(Item.new("001-demo", "Demo"))
        store.write_artifact("001-demo", RESEARCH_FILE, "notes")
        assert sorted(p.name for p in store.item_path("001-demo").iterdir()) == ["item.json", RESEARCH_FILE]

    def test_artifact_whitespace_counts_as_absent(self, store: FileItemStore) -> None:
        store.write_item(Item.new("001-demo", "Demo"))
        assert not store.artifact_exists("001-demo", RESEARCH_FILE)
        store.write_artifact("001-demo", RESEARCH_FILE, "  \n")
        assert not store.artifact_exists("001-demo", RESEARCH_FILE)
        store.write_artifact("001-demo", RESEARCH_FILE, "# Findings\n")
        assert store.artifact_exists("001-demo", RESEARCH_FILE)
        assert store.read_artifact("001-demo", RESEARCH_FILE) == "# Findings\n"

    def test_requirements_doc_round_trip(self, store: FileItemStore) -> None:
        doc = RequirementsDoc(id="001-demo", branch_name="prd/001-demo", subtasks=(SubTask(id="T-001", title="a"),))
        store.write_requirements_doc("001-demo", doc)
        assert store.read_requirements_doc("001-demo") == doc

    def test_malformed_requirements_doc_reads_as_none(self, store: FileItemStore) -> None:
        path = store.item_path("001-demo") / REQUIREMENTS_DOC_FILE
        path.parent.mkdir(parents=True)
        path.write_text("{oops", encoding="utf-8")
        assert store.read_requirements_doc("001-demo") is None
        path.write_text(json.dumps({"subtasks": [{"id": "T-1"}, {"id": "T-1"}]}), encoding="utf-8")
        assert store.read_requirements_doc("001-demo") is None

    def test_append_event_writes_ndjson(self, store: FileItemStore) -> None:
        store.append_event("001-demo", {"phase": "research", "to_state": "researched"})
        store.append_event("001-demo", {"phase": "plan", "error": "missing plan artifact"})
        lines = (store.item_path("001-demo") / EVENTS_FILE).read_text(encoding="utf-8").splitlines()
        assert [json.loads(line)["phase"] for line in lines] == ["research", "plan"]
        assert all("timestamp" in json.loads(line) for line in lines)

    def test_item_lock_is_a_context_manager(self, store: FileItemStore) -> None:
        with store.item_lock("001-demo"):
            assert (store.item_path("001-demo") / ".lock").exists()


class TestInMemoryItemStore:
    def test_basic_operations(self) -> None:
        mem = InMemoryItemStore()
        item = Item.new("001-demo", "Demo")
        mem.write_item(item)
        assert mem.read_item("001-demo") == item
        mem.write_artifact("001-demo", RESEARCH_FILE, "notes")
        assert mem.artifact_exists("001-demo", RESEARCH_FILE)
        assert mem.read_requirements_doc("001-demo") is None
        with mem.item_lock("001-demo"):
            pass
        with pytest.raises(StorageError):
            mem.read_item("nope")


class TestFindRepoRoot:
    def test_finds_root_from_nested_dir(self, tmp_path: Path) -> None:
        (tmp_path / ".git").mkdir()
        (tmp_path / STATE_DIR_NAME).mkdir()
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_repo_root(nested) == tmp_path.resolve()

    def test_state_dir_without_git_is_rejected(self, tmp_path: Path) -> None:
        (tmp_path / STATE_DIR_NAME).mkdir()
        with pytest.raises(RepoNotFound):
            find_repo_root(tmp_path)

    def test_git_repo_without_state_dir(self, tmp_path: Path) -> None:
        (tmp_path / ".git").mkdir()
        with pytest.raises(RepoNotFound):
            find_repo_root(tmp_path)
        assert find_repo_root(tmp_path, require_state_dir=False) == tmp_path.resolve()
