"""Routing policy: which items go to which destination, and what changed.

apply_policy
  1. global date window [now - past_days, now + future_days]; an item is out
     only when it lies entirely outside (end before the lower bound or start
     after the upper bound); unset bounds are open
  2. per destination, independently: category routed there AND (no course
     code OR course in the included list); with `honor_excluded`, a course
     in the excluded list vetoes. Items without a course code are never
     dropped by course rules.

diff_policies
  Course-level changes of the included lists between the last applied policy
  and the current one. No last policy (first run) -> no changes.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from ..config import DestinationPolicy, Policy
from ..models import SourceItem

__all__ = [
    "CourseChanges",
    "FilterResult",
    "PolicyChanges",
    "apply_policy",
    "diff_policies",
    "routes_to",
]


@dataclass(frozen=True)
class FilterResult:
    calendar_items: list[SourceItem] = field(default_factory=list)
    task_items: list[SourceItem] = field(default_factory=list)
    outside_window: int = 0
    filtered_out: int = 0


@dataclass(frozen=True)
class CourseChanges:
    removed: tuple[str, ...] = ()
    added: tuple[str, ...] = ()


@dataclass(frozen=True)
class PolicyChanges:
    calendar: CourseChanges = field(default_factory=CourseChanges)
    tasks: CourseChanges = field(default_factory=CourseChanges)


def _in_window(item: SourceItem, lower: datetime | None, upper: datetime | None) -> bool:
    if lower is not None and item.end < lower:
        return False
    if upper is not None and item.start > upper:
        return False
    return True


def routes_to(item: SourceItem, dest: DestinationPolicy, *, honor_excluded: bool = False) -> bool:
    if item.category not in dest.categories:
        return False
    code = item.course_code
    if not code:
        return True
    if honor_excluded and code in dest.excluded_courses:
        return False
    return code in dest.included_courses


def apply_policy(
    items: Iterable[SourceItem],
    policy: Policy,
    *,
    now: datetime | None = None,
    honor_excluded: bool = False,
) -> FilterResult:
    now = now or datetime.now(tz=UTC)
    rng = policy.date_range
    lower = now - timedelta(days=rng.past_days) if rng.past_days is not None else None
    upper = now + timedelta(days=rng.future_days) if rng.future_days is not None else None

    calendar_items: list[SourceItem] = []
    task_items: list[SourceItem] = []
    outside = 0
    unrouted = 0
    for item in items:
        if not _in_window(item, lower, upper):
            outside += 1
            unrouted += 1
            continue
        to_calendar = routes_to(item, policy.calendar, honor_excluded=honor_excluded)
        to_tasks = routes_to(item, policy.tasks, honor_excluded=honor_excluded)
        if to_calendar:
            calendar_items.append(item)
        if to_tasks:
            task_items.append(item)
        if not (to_calendar or to_tasks):
            unrouted += 1

    return FilterResult(
        calendar_items=calendar_items,
        task_items=task_items,
        outside_window=outside,
        filtered_out=unrouted,
    )


def _course_diff(old: Sequence[str], new: Sequence[str]) -> CourseChanges:
    old_set, new_set = set(old), set(new)
    return CourseChanges(
        removed=tuple(c for c in old if c not in new_set),
        added=tuple(c for c in new if c not in old_set),
    )


def diff_policies(last: Policy | None, current: Policy) -> PolicyChanges:
    if last is None:
        return PolicyChanges()
    return PolicyChanges(
        calendar=_course_diff(last.calendar.included_courses, current.calendar.included_courses),
        tasks=_course_diff(last.tasks.included_courses, current.tasks.included_courses),
    )
