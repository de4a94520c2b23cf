"""Deterministic content fingerprints for feed items.

Goals
- Same logical content => same fingerprint, across runs and processes.
- Any change to uid, title, start, end, description or location => new fingerprint.
- Datetimes are compared as instants: the same moment expressed in two zones
  hashes identically.

Only equality matters; sha256 keeps collisions negligible at feed scale.

Public API
- canonical_item(item: SourceItem) -> str
- fingerprint(item: SourceItem) -> str
- sha256_hex(data: str | bytes) -> str
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from hashlib import sha256

from ..models import SourceItem

__all__ = ["canonical_item", "fingerprint", "sha256_hex"]


def _instant(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def canonical_item(item: SourceItem) -> str:
    """Canonical JSON for the identity-relevant fields of an item."""
    payload = {
        "uid": item.uid,
        "title": item.title,
        "start": _instant(item.start),
        "end": _instant(item.end),
        "description": item.description or "",
        "location": item.location or "",
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sha256_hex(data: str | bytes) -> str:
    """Compute sha256 hex digest."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return sha256(data).hexdigest()


def fingerprint(item: SourceItem) -> str:
    """Stable content hash of a feed item."""
    return sha256_hex(canonical_item(item))
