"""SourceItem → Google Calendar Events resource mapping.

Rules
- summary = display title (course code stripped); description / location as-is,
  the item URL appended to the description when present
- All-day → {"date": ...} values; end date is exclusive, as Google expects
- Timed → {"dateTime": RFC3339 UTC}
- Stable key and fingerprint ride along in extendedProperties.private so a
  calendar can be inspected (or records rebuilt) without the local state

Public API
- item_to_event(item, fingerprint) -> dict
- event_stable_key(event) -> str | None
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from typing import Any

from ..models import SourceItem
from ..utils.timezones import to_google_time

__all__ = ["PRIVATE_FINGERPRINT", "PRIVATE_KEY", "event_stable_key", "item_to_event"]

PRIVATE_KEY = "c2gKey"
PRIVATE_FINGERPRINT = "c2gFingerprint"


def _description(item: SourceItem) -> str:
    parts = [p for p in (item.description.strip(), item.url or "") if p]
    return "\n\n".join(parts)


def item_to_event(item: SourceItem, fingerprint: str) -> dict[str, Any]:
    end = item.end
    if item.is_all_day and end.date() <= item.start.date():
        # Google rejects zero-length all-day events
        end = item.start + timedelta(days=1)

    body: dict[str, Any] = {
        "summary": item.title,
        "description": _description(item),
        "start": to_google_time(item.start, item.is_all_day),
        "end": to_google_time(end, item.is_all_day),
        "extendedProperties": {
            "private": {PRIVATE_KEY: item.stable_key, PRIVATE_FINGERPRINT: fingerprint}
        },
    }
    if item.location:
        body["location"] = item.location
    if item.url:
        body["source"] = {"title": "Canvas", "url": item.url}
    return body


def event_stable_key(event: Mapping[str, Any]) -> str | None:
    private = (event.get("extendedProperties") or {}).get("private") or {}
    key = private.get(PRIVATE_KEY)
    return str(key) if key else None
