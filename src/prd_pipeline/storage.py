"""Persist items, requirements documents and their companion artifacts.

The orchestrator talks to an ``ItemStore``. ``FileItemStore`` keeps one
directory per item under ``.prd_pipeline/items/<id>/``; ``InMemoryItemStore``
keeps everything in dictionaries and is used by tests and by callers that
embed the engine.
"""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from loguru import logger

from .constants import (
    EVENTS_FILE,
    INDEX_FILE,
    INDEX_LOCK_FILE,
    ITEM_FILE,
    ITEM_LOCK_FILE,
    ITEMS_DIR,
    PROMPTS_DIR,
    REQUIREMENTS_DOC_FILE,
    SCHEMA_VERSION,
    STATE_DIR_NAME,
)
from .errors import RepoNotFound, StorageError
from .io_utils import FileLock, _append_event, _atomic_write_json, _atomic_write_text, _load_data_with_error
from .models import Item, RequirementsDoc
from .utils import _now_iso


class ItemStore(ABC):
    @abstractmethod
    def read_item(self, item_id: str) -> Item:
        raise NotImplementedError

    @abstractmethod
    def write_item(self, item: Item) -> None:
        raise NotImplementedError

    @abstractmethod
    def read_requirements_doc(self, item_id: str) -> Optional[RequirementsDoc]:
        raise NotImplementedError

    @abstractmethod
    def write_requirements_doc(self, item_id: str, doc: RequirementsDoc) -> None:
        raise NotImplementedError

    @abstractmethod
    def artifact_exists(self, item_id: str, name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def read_artifact(self, item_id: str, name: str) -> Optional[str]:
        raise NotImplementedError

    @abstractmethod
    def write_artifact(self, item_id: str, name: str, text: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def list_items(self) -> list[Item]:
        raise NotImplementedError

    @abstractmethod
    def item_lock(self, item_id: str) -> Any:
        """Return a context manager held for the duration of one phase run."""
        raise NotImplementedError

    def item_path(self, item_id: str) -> Optional[Path]:
        return None

    def append_event(self, item_id: str, event: dict[str, Any]) -> None:
        return None

    def refresh_index(self) -> None:
        return None


def find_repo_root(start: Path, *, require_state_dir: bool = True) -> Path:
    """Walk up from ``start`` to the repository holding the state dir.

    Raises:
        RepoNotFound: If no git repository (with a state dir, when required)
            contains ``start``.
    """
    start = start.resolve()
    for candidate in [start, *start.parents]:
        has_git = (candidate / ".git").exists()
        has_state = (candidate / STATE_DIR_NAME).is_dir()
        if has_state and not has_git:
            raise RepoNotFound(f"Found {STATE_DIR_NAME} at {candidate} but it is not a git repository")
        if has_git and (has_state or not require_state_dir):
            return candidate
        if has_git:
            break
    if require_state_dir:
        raise RepoNotFound(f"No {STATE_DIR_NAME} directory found from {start}; run 'prd-pipeline init' first")
    raise RepoNotFound(f"Not inside a git repository: {start}")


class FileItemStore(ItemStore):
    """File-backed store rooted at a repository directory."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.state_dir = self.root / STATE_DIR_NAME
        self.items_dir = self.state_dir / ITEMS_DIR
        self.prompts_dir = self.state_dir / PROMPTS_DIR

    def ensure_layout(self) -> None:
        self.items_dir.mkdir(parents=True, exist_ok=True)
        self.prompts_dir.mkdir(parents=True, exist_ok=True)

    def item_path(self, item_id: str) -> Path:
        if not item_id or "/" in item_id or "\\" in item_id or item_id in {".", ".."}:
            raise StorageError(f"Invalid item id: {item_id!r}")
        return self.items_dir / item_id

    # -- items --------------------------------------------------------------

    def read_item(self, item_id: str) -> Item:
        path = self.item_path(item_id) / ITEM_FILE
        if not path.exists():
            raise StorageError(f"Item not found: {item_id}")
        data, err = _load_data_with_error(path, {})
        if err:
            raise StorageError(f"Unable to read item {item_id}: {err}")
        try:
            return Item.from_dict(data)
        except ValueError as exc:
            raise StorageError(f"Invalid item {item_id}: {exc}") from exc

    def write_item(self, item: Item) -> None:
        path = self.item_path(item.id) / ITEM_FILE
        try:
            _atomic_write_json(path, item.to_dict())
        except OSError as exc:
            raise StorageError(f"Unable to write item {item.id}: {exc}") from exc
        logger.debug("Wrote item {} (state={})", item.id, item.state.value)
        try:
            self.refresh_index()
        except StorageError as exc:
            logger.warning("Item {} written but index not refreshed: {}", item.id, exc)

    def list_items(self) -> list[Item]:
        if not self.items_dir.exists():
            return []
        items: list[Item] = []
        for entry in sorted(self.items_dir.iterdir()):
            if not (entry / ITEM_FILE).exists():
                continue
            try:
                items.append(self.read_item(entry.name))
            except StorageError as exc:
                logger.warning("Skipping unreadable item {}: {}", entry.name, exc)
        return items

    def item_lock(self, item_id: str) -> FileLock:
        return FileLock(self.item_path(item_id) / ITEM_LOCK_FILE)

    # -- requirements document ---------------------------------------------

    def read_requirements_doc(self, item_id: str) -> Optional[RequirementsDoc]:
        path = self.item_path(item_id) / REQUIREMENTS_DOC_FILE
        if not path.exists():
            return None
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Ignoring unreadable requirements document for {}: {}", item_id, err)
            return None
        try:
            return RequirementsDoc.from_dict(data)
        except ValueError as exc:
            logger.warning("Ignoring invalid requirements document for {}: {}", item_id, exc)
            return None

    def write_requirements_doc(self, item_id: str, doc: RequirementsDoc) -> None:
        path = self.item_path(item_id) / REQUIREMENTS_DOC_FILE
        try:
            _atomic_write_json(path, doc.to_dict())
        except OSError as exc:
            raise StorageError(f"Unable to write requirements document for {item_id}: {exc}") from exc
        logger.debug("Wrote requirements document for {}", item_id)

    # -- artifacts ----------------------------------------------------------

    def artifact_exists(self, item_id: str, name: str) -> bool:
        text = self.read_artifact(item_id, name)
        return bool(text and text.strip())

    def read_artifact(self, item_id: str, name: str) -> Optional[str]:
        path = self.item_path(item_id) / name
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageError(f"Unable to read {name} for {item_id}: {exc}") from exc

    def write_artifact(self, item_id: str, name: str, text: str) -> None:
        try:
            _atomic_write_text(self.item_path(item_id) / name, text)
        except OSError as exc:
            raise StorageError(f"Unable to write {name} for {item_id}: {exc}") from exc

    # -- events and index ---------------------------------------------------

    def append_event(self, item_id: str, event: dict[str, Any]) -> None:
        try:
            _append_event(self.item_path(item_id) / EVENTS_FILE, event)
        except OSError as exc:
            logger.warning("Unable to append event for {}: {}", item_id, exc)

    def build_index(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "generated_at": _now_iso(),
            "items": [
                {"id": item.id, "state": item.state.value, "title": item.title}
                for item in self.list_items()
            ],
        }

    def read_index(self) -> Optional[dict[str, Any]]:
        path = self.state_dir / INDEX_FILE
        if not path.exists():
            return None
        data, err = _load_data_with_error(path, {})
        if err:
            logger.warning("Ignoring unreadable index: {}", err)
            return None
        return data

    def refresh_index(self) -> None:
        """Rebuild ``index.json`` from the items on disk, one writer at a time."""
        try:
            with FileLock(self.state_dir / INDEX_LOCK_FILE):
                _atomic_write_json(self.state_dir / INDEX_FILE, self.build_index())
        except OSError as exc:
            raise StorageError(f"Unable to write index: {exc}") from exc


class InMemoryItemStore(ItemStore):
    """Dictionary-backed store with per-item thread locks."""

    def __init__(self) -> None:
        self.items: dict[str, Item] = {}
        self.requirements: dict[str, RequirementsDoc] = {}
        self.artifacts: dict[tuple[str, str], str] = {}
        self.events: dict[str, list[dict[str, Any]]] = {}
        self.writes: list[Item] = []
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def read_item(self, item_id: str) -> Item:
        try:
            return self.items[item_id]
        except KeyError:
            raise StorageError(f"Item not found: {item_id}") from None

    def write_item(self, item: Item) -> None:
        with self._guard:
            self.items[item.id] = item
            self.writes.append(item)

    def read_requirements_doc(self, item_id: str) -> Optional[RequirementsDoc]:
        return self.requirements.get(item_id)

    def write_requirements_doc(self, item_id: str, doc: RequirementsDoc) -> None:
        self.requirements[item_id] = doc

    def artifact_exists(self, item_id: str, name: str) -> bool:
        if name == REQUIREMENTS_DOC_FILE:
            return item_id in self.requirements
        text = self.artifacts.get((item_id, name))
        return bool(text and text.strip())

    def read_artifact(self, item_id: str, name: str) -> Optional[str]:
        if name == REQUIREMENTS_DOC_FILE and item_id in self.requirements:
            return json.dumps(self.requirements[item_id].to_dict(), indent=2)
        return self.artifacts.get((item_id, name))

    def write_artifact(self, item_id: str, name: str, text: str) -> None:
        self.artifacts[(item_id, name)] = text

    def list_items(self) -> list[Item]:
        return [self.items[key] for key in sorted(self.items)]

    @contextmanager
    def item_lock(self, item_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(item_id, threading.Lock())
        with lock:
            yield

    def append_event(self, item_id: str, event: dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("timestamp", _now_iso())
        with self._guard:
            self.events.setdefault(item_id, []).append(payload)
