"""SourceItem → Google Tasks resource mapping.

Google Tasks keeps only the date part of `due`: timed items send their start
as RFC3339 UTC, all-day items send their own calendar date at midnight.
Notes carry the description and the item URL; the stable key is appended on
its own line because tasks have no private properties.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from ..models import SourceItem
from ..utils.timezones import to_rfc3339

__all__ = ["KEY_MARKER", "item_to_task", "task_stable_key"]

KEY_MARKER = "c2g-key: "

# Google Tasks limits notes to 8192 characters
_NOTES_LIMIT = 8192


def _due(item: SourceItem) -> str:
    if item.is_all_day:
        # Keep the calendar date of the feed's zone
        return f"{item.start.date().isoformat()}T00:00:00.000Z"
    return to_rfc3339(item.start)


def item_to_task(item: SourceItem, fingerprint: str) -> dict[str, Any]:
    marker = f"{KEY_MARKER}{item.stable_key}"
    parts = [p for p in (item.description.strip(), item.url or "") if p]
    body = "\n\n".join(parts)
    room = _NOTES_LIMIT - len(marker) - 2
    if len(body) > room:
        body = body[: max(0, room - 1)] + "…"
    notes = f"{body}\n\n{marker}" if body else marker
    return {
        "title": item.title,
        "notes": notes,
        "due": _due(item),
    }


def task_stable_key(task: Mapping[str, Any]) -> str | None:
    for line in reversed((task.get("notes") or "").splitlines()):
        if line.startswith(KEY_MARKER):
            return line[len(KEY_MARKER) :].strip() or None
    return None
