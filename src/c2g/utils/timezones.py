"""Timezone helpers for ICS feed values and Google API payloads.

Responsibilities
- Resolve TZIDs using stdlib zoneinfo, falling back to UTC.
- Turn icalendar-decoded DTSTART/DTEND values (date, naive datetime, aware
  datetime) into timezone-aware datetimes.
- Render datetimes for Google Calendar / Google Tasks payloads and read
  ISO strings back (dateutil).

ICS values (as decoded by icalendar)
- DATE                  -> datetime.date          (all-day; placed at local midnight)
- DATE-TIME with TZID   -> aware datetime         (kept as-is)
- DATE-TIME UTC (Z)     -> aware datetime in UTC
- floating DATE-TIME    -> naive datetime         (localized in the feed zone)

Public API
- get_zoneinfo(tzid: str | None) -> ZoneInfo | None
- ensure_tz(dt, tzid, default_tz="UTC") -> datetime
- resolve_ics_value(value, feed_tz) -> tuple[datetime, bool]
- to_google_time(value, is_all_day) -> dict[str, str]
- to_rfc3339(value) -> str
- parse_iso(value) -> datetime | None
"""

from __future__ import annotations

from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as dtparser

__all__ = [
    "ensure_tz",
    "get_zoneinfo",
    "parse_iso",
    "resolve_ics_value",
    "to_google_time",
    "to_rfc3339",
]


def get_zoneinfo(tzid: str | None) -> ZoneInfo | None:
    """Resolve a TZID to ZoneInfo, returning None if not found or not provided."""
    if not tzid:
        return None
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        if tzid.upper() in {"UTC", "Z", "GMT"}:
            return ZoneInfo("UTC")
        return None


def ensure_tz(dt: datetime, tzid: str | None, default_tz: str = "UTC") -> datetime:
    """Ensure a datetime is timezone-aware.

    - If dt already timezone-aware, return as-is.
    - If naive, try tzid; else default_tz; else UTC.
    """
    if dt.tzinfo is not None:
        return dt
    z = get_zoneinfo(tzid) or get_zoneinfo(default_tz) or ZoneInfo("UTC")
    return dt.replace(tzinfo=z)


def resolve_ics_value(value: date | datetime, feed_tz: str | None) -> tuple[datetime, bool]:
    """Return (aware datetime, is_date_only) for a decoded ICS date/datetime."""
    if isinstance(value, datetime):
        return ensure_tz(value, feed_tz), False
    if isinstance(value, date):
        z = get_zoneinfo(feed_tz) or ZoneInfo("UTC")
        return datetime.combine(value, time.min, tzinfo=z), True
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")


def to_rfc3339(value: datetime) -> str:
    """UTC RFC3339 with a trailing Z."""
    return ensure_tz(value, None).astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def to_google_time(value: datetime, is_all_day: bool) -> dict[str, str]:
    """Google Calendar start/end payload.

    - all-day -> {"date": "YYYY-MM-DD"} using the item's own zone for the date
    - timed   -> {"dateTime": RFC3339 UTC}
    """
    if is_all_day:
        return {"date": value.date().isoformat()}
    return {"dateTime": to_rfc3339(value)}


def parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string into an aware datetime (UTC when no offset)."""
    if not value:
        return None
    return ensure_tz(dtparser.isoparse(value), None)
