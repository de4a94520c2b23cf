"""Item classification: course code, category and display title.

Course code, first match wins
1. leading code at the very start of the title: "CSCE 331 - Homework",
   "ABCD1234E Quiz"; the separator between letters and digits is dropped
2. code opening a trailing bracket: "Homework [CSCE-331:916,970]"
No match -> no course code (such items are never dropped by course policy).

Category comes from the structural prefix of the Canvas UID, which is
authoritative:
- event-assignment-override-*  -> assignment (override)
- event-assignment-*           -> assignment
- event-calendar-event-*       -> event
- anything else                -> event (unknown)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ..models import Category, ItemKind

__all__ = ["Classification", "classify", "extract_course_code", "strip_course_code"]

_CODE = r"[A-Z]{2,4}[-\s]?\d{3,4}[A-Z]?"

_LEADING_RE = re.compile(rf"^(?P<code>{_CODE})(?![A-Za-z0-9])")
_LEADING_STRIP_RE = re.compile(rf"^{_CODE}(?![A-Za-z0-9])\s*(?:[-–—:]\s*)?")
_BRACKET_RE = re.compile(r"\[(?P<letters>[A-Z]{2,4})[-\s]?(?P<digits>\d{3,4}[A-Z]?)")
_BRACKET_STRIP_RE = re.compile(rf"\s*\[{_CODE}[^\]]*\]\s*$")

_UID_PREFIXES: tuple[tuple[str, Category, ItemKind], ...] = (
    ("event-assignment-override-", Category.ASSIGNMENT, ItemKind.ASSIGNMENT_OVERRIDE),
    ("event-assignment-", Category.ASSIGNMENT, ItemKind.ASSIGNMENT),
    ("event-calendar-event-", Category.EVENT, ItemKind.CALENDAR_EVENT),
)


@dataclass(frozen=True)
class Classification:
    course_code: str | None
    category: Category
    kind: ItemKind
    title: str


def extract_course_code(title: str) -> str | None:
    m = _LEADING_RE.match(title)
    if m:
        return re.sub(r"[-\s]", "", m.group("code"))
    m = _BRACKET_RE.search(title)
    if m:
        return m.group("letters") + m.group("digits")
    return None


def strip_course_code(title: str) -> str:
    """Remove a leading or trailing-bracket course code and trim whitespace."""
    out = _LEADING_STRIP_RE.sub("", title, count=1)
    out = _BRACKET_STRIP_RE.sub("", out)
    out = out.strip()
    # A title that is only a course code keeps its text
    return out or title.strip()


def category_for_uid(uid: str) -> tuple[Category, ItemKind]:
    lowered = uid.lower()
    for prefix, category, kind in _UID_PREFIXES:
        if lowered.startswith(prefix):
            return category, kind
    return Category.EVENT, ItemKind.UNKNOWN


def classify(uid: str, title: str) -> Classification:
    category, kind = category_for_uid(uid)
    return Classification(
        course_code=extract_course_code(title),
        category=category,
        kind=kind,
        title=strip_course_code(title),
    )
