from __future__ import annotations

import pytest

from c2g.mapping.events import item_to_event
from c2g.models import Destination, SyncedRecord
from c2g.sync.calendar_sync import NO_CALENDAR_MESSAGE, CalendarSync

OWNER = "u1"


def _sync(state, remote, **kwargs) -> CalendarSync:
    return CalendarSync(state, remote, owner_id=OWNER, calendar_name="Canvas", **kwargs)


def test_missing_calendar_fails_the_pass(state, remote, make_item) -> None:
    out = _sync(state, remote).run([make_item("e")])

    assert out.fatal is True
    assert [e.message for e in out.errors] == [NO_CALENDAR_MESSAGE]
    assert remote.calls == []


def test_create_calendar_then_sync(state, remote, make_item) -> None:
    sync = _sync(state, remote)
    collection, created = sync.create_calendar()

    out = sync.run([make_item("e", "Lecture", location="Room 12")])

    assert created is True
    assert collection.created_by_engine is True
    assert [r.uid for r in out.created] == ["e"]
    event = next(iter(remote.items[collection.external_id].values()))
    assert event["summary"] == "Lecture"
    assert event["location"] == "Room 12"


def test_create_calendar_is_idempotent(state, remote) -> None:
    sync = _sync(state, remote)
    first, _ = sync.create_calendar()

    second, created = sync.create_calendar()

    assert created is False
    assert second.external_id == first.external_id
    assert [c for c in remote.calls if c[0] == "create_collection"] == [
        ("create_collection", "Canvas")
    ]


def test_create_calendar_adopts_existing_google_calendar(state, remote) -> None:
    existing_id = remote.create_collection("Canvas")

    collection, created = _sync(state, remote).create_calendar()

    assert created is False
    assert collection.external_id == existing_id
    assert collection.created_by_engine is False


def test_create_calendar_rejects_blank_name(state, remote) -> None:
    with pytest.raises(ValueError):
        _sync(state, remote).create_calendar("   ")


def test_records_of_other_calendars_are_ignored(state, remote, make_item) -> None:
    sync = _sync(state, remote)
    collection, _ = sync.create_calendar()
    state.create_record(
        SyncedRecord(
            owner_id=OWNER,
            destination=Destination.CALENDAR,
            stable_key="c2g:old",
            external_id="ev-old",
            collection_id="cal-deleted",
        )
    )

    out = sync.run([])

    assert out.deleted == []
    assert state.get_record(OWNER, Destination.CALENDAR, "c2g:old") is not None


def test_reset_keeps_user_events(state, remote, make_item) -> None:
    sync = _sync(state, remote)
    collection, _ = sync.create_calendar()
    sync.run([make_item("e1"), make_item("e2")])
    state.create_record(
        SyncedRecord(
            owner_id=OWNER,
            destination=Destination.CALENDAR,
            stable_key="user-event",
            external_id="ev-user",
            collection_id=collection.external_id,
        )
    )

    out = sync.reset()

    assert sorted(r.uid for r in out.deleted) == ["e1", "e2"]
    remaining = [r.stable_key for r in state.find_existing(OWNER, Destination.CALENDAR)]
    assert remaining == ["user-event"]


def test_reset_removes_keyed_events_the_store_lost(state, remote, make_item) -> None:
    sync = _sync(state, remote)
    collection, _ = sync.create_calendar()
    events = remote.items[collection.external_id]
    events["ev-lost"] = item_to_event(make_item("lost", "Old lecture"), "fp")
    events["ev-user"] = {"summary": "Dentist"}

    out = sync.reset()

    assert [(r.uid, r.external_id) for r in out.deleted] == [("lost", "ev-lost")]
    assert list(events) == ["ev-user"]


def test_reset_without_registered_calendar_lists_nothing(state, remote) -> None:
    out = _sync(state, remote).reset()

    assert out.errors == []
    assert remote.calls == []
