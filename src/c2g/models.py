"""Typed domain records shared by the feed, sync and state layers.

- SourceItem: one classified feed entry (immutable, per run)
- SyncedRecord: a downstream item previously written by a sync run (or adopted
  from a user), keyed by (owner, destination, stable_key)
- Collection: a downstream calendar or task list

Stable keys
  Engine-created records use ``PROVENANCE_PREFIX + uid``. Records without the
  prefix belong to the user and are never deleted automatically.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

__all__ = [
    "PROVENANCE_PREFIX",
    "Category",
    "Collection",
    "Destination",
    "ItemKind",
    "SourceItem",
    "SyncedRecord",
    "is_engine_key",
    "stable_key_for",
    "uid_from_key",
]

PROVENANCE_PREFIX = "c2g:"


class Destination(StrEnum):
    CALENDAR = "calendar"
    TASKS = "tasks"


class Category(StrEnum):
    ASSIGNMENT = "assignment"
    EVENT = "event"


class ItemKind(StrEnum):
    ASSIGNMENT = "assignment"
    ASSIGNMENT_OVERRIDE = "assignment_override"
    CALENDAR_EVENT = "calendar_event"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SourceItem:
    uid: str
    title: str
    start: datetime
    end: datetime
    category: Category
    kind: ItemKind = ItemKind.UNKNOWN
    description: str = ""
    location: str = ""
    is_all_day: bool = False
    course_code: str | None = None
    url: str | None = None
    raw_title: str = ""

    @property
    def stable_key(self) -> str:
        return stable_key_for(self.uid)


@dataclass(frozen=True)
class SyncedRecord:
    owner_id: str
    destination: Destination
    stable_key: str
    external_id: str
    collection_id: str
    fingerprint: str | None = None
    course_code: str | None = None
    title: str = ""
    start: datetime | None = None

    @property
    def engine_owned(self) -> bool:
        return is_engine_key(self.stable_key)


@dataclass(frozen=True)
class Collection:
    owner_id: str
    destination: Destination
    name: str
    external_id: str
    created_by_engine: bool = True


def stable_key_for(uid: str) -> str:
    return f"{PROVENANCE_PREFIX}{uid}"


def is_engine_key(stable_key: str) -> bool:
    return stable_key.startswith(PROVENANCE_PREFIX)


def uid_from_key(stable_key: str) -> str:
    if is_engine_key(stable_key):
        return stable_key[len(PROVENANCE_PREFIX) :]
    return stable_key
