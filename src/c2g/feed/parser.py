"""ICS feed parser: raw feed text -> typed, classified SourceItems.

Rules
- The text must be a single VCALENDAR; anything else is MalformedFeed.
- More than `max_entries` VEVENTs is MalformedFeed (checked on the raw text
  before the full parse, and again after).
- DTSTART/DTEND become timezone-aware datetimes (see utils.timezones);
  floating and DATE values use the feed's X-WR-TIMEZONE, else UTC.
- DATE-only DTSTART marks the item all-day.
- Missing DTEND: DTSTART + DURATION when present, else +1 day for all-day
  items, else DTEND = DTSTART.
- Entries without UID or a usable DTSTART are skipped (logged): they cannot be
  matched across runs.
- Missing optional text -> "".

Output order follows the feed. Feeds are bounded by the fetch-time size
ceiling, so the whole result is materialized.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

from icalendar import Calendar

from ..errors import MalformedFeed
from ..models import SourceItem
from ..utils.timezones import resolve_ics_value
from .classifier import classify

__all__ = ["FeedParser", "ParsedFeed"]

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ParsedFeed:
    items: list[SourceItem] = field(default_factory=list)
    calendar_name: str | None = None
    timezone: str | None = None
    skipped: int = 0


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0] if value else ""
    return str(value).strip()


class FeedParser:
    def __init__(self, *, max_entries: int = 5000) -> None:
        self.max_entries = max_entries

    def parse(self, raw: str) -> list[SourceItem]:
        return self.parse_feed(raw).items

    def parse_feed(self, raw: str) -> ParsedFeed:
        if not raw or "BEGIN:VCALENDAR" not in raw.upper():
            raise MalformedFeed("Feed is not calendar data (no VCALENDAR)")

        declared = raw.upper().count("BEGIN:VEVENT")
        if declared > self.max_entries:
            raise MalformedFeed(f"Feed has {declared} entries; limit is {self.max_entries}")

        try:
            cal = Calendar.from_ical(raw)
        except Exception as exc:
            raise MalformedFeed(f"Feed could not be parsed: {exc}") from exc
        if getattr(cal, "name", None) != "VCALENDAR":
            raise MalformedFeed("Feed top-level component is not VCALENDAR")

        vevents = list(cal.walk("VEVENT"))
        if len(vevents) > self.max_entries:
            raise MalformedFeed(f"Feed has {len(vevents)} entries; limit is {self.max_entries}")

        feed_tz = _text(cal, "X-WR-TIMEZONE") or None
        items: list[SourceItem] = []
        skipped = 0
        for vevent in vevents:
            try:
                item = self._to_item(vevent, feed_tz)
            except (ValueError, TypeError, KeyError) as exc:
                skipped += 1
                log.warning(
                    "feed-entry-skipped reason=%s", exc, extra={"uid": _text(vevent, "UID")}
                )
                continue
            if item is None:
                skipped += 1
                continue
            items.append(item)

        log.info("feed-parsed entries=%d skipped=%d", len(items), skipped)
        return ParsedFeed(
            items=items,
            calendar_name=_text(cal, "X-WR-CALNAME") or None,
            timezone=feed_tz,
            skipped=skipped,
        )

    def _to_item(self, vevent: Any, feed_tz: str | None) -> SourceItem | None:
        uid = _text(vevent, "UID")
        if not uid:
            log.warning("feed-entry-without-uid summary=%s", _text(vevent, "SUMMARY")[:60])
            return None
        if vevent.get("DTSTART") is None:
            log.warning("feed-entry-without-dtstart", extra={"uid": uid})
            return None

        start_raw = vevent.decoded("DTSTART")
        if not isinstance(start_raw, date | datetime):
            raise ValueError(f"DTSTART has unsupported type {type(start_raw).__name__}")
        start, all_day = resolve_ics_value(start_raw, feed_tz)

        if vevent.get("DTEND") is not None:
            end, _ = resolve_ics_value(vevent.decoded("DTEND"), feed_tz)
        elif vevent.get("DURATION") is not None:
            end = start + vevent.decoded("DURATION")
        elif all_day:
            end = start + timedelta(days=1)
        else:
            end = start

        raw_title = _text(vevent, "SUMMARY")
        cls = classify(uid, raw_title)
        return SourceItem(
            uid=uid,
            title=cls.title,
            raw_title=raw_title,
            description=_text(vevent, "DESCRIPTION"),
            location=_text(vevent, "LOCATION"),
            url=_text(vevent, "URL") or None,
            start=start,
            end=end,
            is_all_day=all_day,
            course_code=cls.course_code,
            category=cls.category,
            kind=cls.kind,
        )
