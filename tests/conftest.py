from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from c2g.models import Category, ItemKind, SourceItem
from c2g.state import State

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


class FakeRemote:
    """In-memory Google destination: collections of items keyed by generated ids."""

    def __init__(self, prefix: str = "ext") -> None:
        self.prefix = prefix
        self.collections: dict[str, str] = {}  # id -> name
        self.items: dict[str, dict[str, dict[str, Any]]] = {}  # collection id -> id -> fields
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, Callable[[Mapping[str, Any] | None], bool]] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _next_id(self) -> str:
        with self._lock:
            return f"{self.prefix}-{next(self._ids)}"

    def _maybe_fail(self, op: str, fields: Mapping[str, Any] | None) -> None:
        check = self.fail_on.get(op)
        if check is not None and check(fields):
            raise RuntimeError(f"remote {op} failed")

    def find_collection(self, name: str) -> str | None:
        for cid, cname in self.collections.items():
            if cname == name:
                return cid
        return None

    def create_collection(self, name: str) -> str:
        self._maybe_fail("create_collection", {"name": name})
        cid = self._next_id()
        self.collections[cid] = name
        self.items[cid] = {}
        self.calls.append(("create_collection", name))
        return cid

    def create_item(self, collection_id: str, fields: Mapping[str, Any]) -> str:
        self._maybe_fail("create", fields)
        ext = self._next_id()
        with self._lock:
            self.items.setdefault(collection_id, {})[ext] = dict(fields)
            self.calls.append(("create", ext))
        return ext

    def update_item(self, collection_id: str, external_id: str, fields: Mapping[str, Any]) -> None:
        self._maybe_fail("update", fields)
        with self._lock:
            self.items[collection_id][external_id] = dict(fields)
            self.calls.append(("update", external_id))

    def delete_item(self, collection_id: str, external_id: str) -> None:
        self._maybe_fail("delete", None)
        with self._lock:
            self.items.get(collection_id, {}).pop(external_id, None)
            self.calls.append(("delete", external_id))

    def list_items(self, collection_id: str) -> list[dict[str, Any]]:
        return [dict(v, id=k) for k, v in self.items.get(collection_id, {}).items()]

    def titles(self, collection_id: str) -> list[str]:
        return sorted(
            str(f.get("summary") or f.get("title")) for f in self.items[collection_id].values()
        )

    def mutations(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] in {"create", "update", "delete"}]


def build_item(
    uid: str,
    title: str = "Item",
    *,
    course_code: str | None = None,
    category: Category = Category.ASSIGNMENT,
    start: datetime | None = None,
    end: datetime | None = None,
    description: str = "",
    location: str = "",
    is_all_day: bool = False,
) -> SourceItem:
    start = start or NOW + timedelta(days=2)
    return SourceItem(
        uid=uid,
        title=title,
        raw_title=title,
        start=start,
        end=end or start + timedelta(hours=1),
        category=category,
        kind=ItemKind.ASSIGNMENT if category is Category.ASSIGNMENT else ItemKind.CALENDAR_EVENT,
        description=description,
        location=location,
        is_all_day=is_all_day,
        course_code=course_code,
    )


@pytest.fixture
def make_item() -> Callable[..., SourceItem]:
    return build_item


@pytest.fixture
def state(tmp_path) -> Iterator[State]:
    st = State(str(tmp_path / "state.sqlite"))
    yield st
    st.close()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()
