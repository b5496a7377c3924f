"""Turn free-form idea lists into new items."""

from __future__ import annotations

import re
from typing import Iterable

from loguru import logger

from .models import Item
from .storage import ItemStore
from .utils import _slugify

_BULLET_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")
_ID_NUMBER_RE = re.compile(r"^(\d+)-")


def parse_ideas(text: str) -> list[str]:
    """Return one title per non-empty line, with list bullets and headings stripped."""
    titles: list[str] = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        line = _BULLET_RE.sub("", line).strip()
        if line:
            titles.append(line)
    return titles


def _next_number(existing_ids: Iterable[str]) -> int:
    highest = 0
    for item_id in existing_ids:
        match = _ID_NUMBER_RE.match(item_id)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest + 1


def ingest_ideas(store: ItemStore, text: str) -> list[Item]:
    """Create an ``idea`` item for each idea in ``text``.

    Ideas whose title matches an existing item are skipped.
    """
    existing = store.list_items()
    known_titles = {item.title.strip().lower() for item in existing}
    number = _next_number(item.id for item in existing)
    created: list[Item] = []
    for title in parse_ideas(text):
        if title.lower() in known_titles:
            logger.info("Skipping duplicate idea '{}'", title)
            continue
        item = Item.new(f"{number:03d}-{_slugify(title)}", title, overview=title)
        store.write_item(item)
        logger.info("Created item {}", item.id)
        created.append(item)
        known_titles.add(title.lower())
        number += 1
    return created
