"""Provide utility helpers for timestamps and identifiers."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional


_SLUG_RE = re.compile(r"[^a-z0-9]+")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        if not isinstance(value, str):
            value = str(value)
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        # If a naive timestamp slips in, assume UTC to avoid crashes.
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    except ValueError:
        return None


def _next_timestamp(previous: Optional[str]) -> str:
    """Return an ISO timestamp strictly later than ``previous``.

    Two builder calls can land in the same clock tick, so when the wall clock
    has not moved past ``previous`` the result is ``previous`` plus one
    microsecond.
    """
    now = datetime.now(timezone.utc)
    prev = _parse_iso(previous)
    if prev is not None and now <= prev:
        now = prev + timedelta(microseconds=1)
    return now.isoformat()


def _slugify(value: str, max_length: int = 40) -> str:
    slug = _SLUG_RE.sub("-", str(value or "").lower()).strip("-")
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")
    return slug or "item"
