from __future__ import annotations

import dataclasses
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from conftest import build_item

from c2g.mapping.events import PRIVATE_FINGERPRINT, PRIVATE_KEY, event_stable_key, item_to_event
from c2g.mapping.tasks import KEY_MARKER, item_to_task, task_stable_key

CHICAGO = ZoneInfo("America/Chicago")


class TestEvents:
    def test_timed_event(self) -> None:
        item = build_item(
            "event-calendar-event-1",
            "Lecture",
            start=datetime(2026, 3, 13, 15, 0, tzinfo=CHICAGO),
            end=datetime(2026, 3, 13, 16, 30, tzinfo=CHICAGO),
            description="Bring notes",
            location="Room 12",
        )

        event = item_to_event(item, "fp1")

        assert event["summary"] == "Lecture"
        assert event["start"] == {"dateTime": "2026-03-13T20:00:00.000Z"}
        assert event["end"] == {"dateTime": "2026-03-13T21:30:00.000Z"}
        assert event["description"] == "Bring notes"
        assert event["location"] == "Room 12"
        assert event["extendedProperties"]["private"] == {
            PRIVATE_KEY: "c2g:event-calendar-event-1",
            PRIVATE_FINGERPRINT: "fp1",
        }
        assert "source" not in event
        assert event_stable_key(event) == "c2g:event-calendar-event-1"

    def test_all_day_event_uses_dates(self) -> None:
        start = datetime(2026, 3, 12, tzinfo=CHICAGO)
        item = build_item("h", start=start, end=start + timedelta(days=1), is_all_day=True)

        event = item_to_event(item, "fp")

        assert event["start"] == {"date": "2026-03-12"}
        assert event["end"] == {"date": "2026-03-13"}

    def test_zero_length_all_day_event_gets_one_day(self) -> None:
        start = datetime(2026, 3, 12, tzinfo=CHICAGO)
        item = build_item("h", start=start, end=start, is_all_day=True)

        assert item_to_event(item, "fp")["end"] == {"date": "2026-03-13"}

    def test_url_goes_to_description_and_source(self) -> None:
        item = build_item("e", description="Details")
        item = dataclasses.replace(item, url="https://canvas.example.edu/x")

        event = item_to_event(item, "fp")

        assert event["description"] == "Details\n\nhttps://canvas.example.edu/x"
        assert event["source"] == {"title": "Canvas", "url": "https://canvas.example.edu/x"}

    def test_event_without_private_key(self) -> None:
        assert event_stable_key({"summary": "mine"}) is None


class TestTasks:
    def test_timed_task_due_is_utc(self) -> None:
        item = build_item("a", "Essay", start=datetime(2026, 3, 10, 23, 59, tzinfo=UTC))

        task = item_to_task(item, "fp")

        assert task["title"] == "Essay"
        assert task["due"] == "2026-03-10T23:59:00.000Z"
        assert task["notes"] == f"{KEY_MARKER}c2g:a"
        assert "status" not in task

    def test_all_day_task_keeps_local_date(self) -> None:
        # Midnight in Tokyo is the previous day in UTC
        start = datetime(2026, 3, 12, tzinfo=ZoneInfo("Asia/Tokyo"))
        item = build_item("a", start=start, end=start + timedelta(days=1), is_all_day=True)

        assert item_to_task(item, "fp")["due"] == "2026-03-12T00:00:00.000Z"

    def test_notes_carry_description_and_key(self) -> None:
        item = build_item("a", description="Read chapter 3")

        task = item_to_task(item, "fp")

        assert task["notes"] == f"Read chapter 3\n\n{KEY_MARKER}c2g:a"
        assert task_stable_key(task) == "c2g:a"

    def test_long_notes_are_truncated_but_keep_key(self) -> None:
        item = build_item("a", description="x" * 10000)

        task = item_to_task(item, "fp")

        assert len(task["notes"]) <= 8192
        assert task_stable_key(task) == "c2g:a"

    def test_task_without_marker(self) -> None:
        assert task_stable_key({"title": "mine", "notes": "buy milk"}) is None
        assert task_stable_key({"title": "mine"}) is None
