from __future__ import annotations

from datetime import timedelta

from conftest import NOW, build_item

from c2g.config import CalendarPolicy, DateRange, Policy, TasksPolicy
from c2g.models import Category
from c2g.sync.policy import CourseChanges, apply_policy, diff_policies, routes_to


def _policy(**kwargs) -> Policy:
    return Policy(
        calendar=CalendarPolicy(included_courses=kwargs.get("calendar", ["CS101"])),
        tasks=TasksPolicy(
            included_courses=kwargs.get("tasks", ["CS101"]),
            excluded_courses=kwargs.get("tasks_excluded", []),
        ),
        date_range=kwargs.get("date_range", DateRange(past_days=None, future_days=None)),
    )


class TestRouting:
    def test_categories_pick_the_destination(self) -> None:
        result = apply_policy(
            [
                build_item("a", course_code="CS101", category=Category.ASSIGNMENT),
                build_item("e", course_code="CS101", category=Category.EVENT),
            ],
            _policy(),
            now=NOW,
        )
        assert [i.uid for i in result.task_items] == ["a"]
        assert [i.uid for i in result.calendar_items] == ["e"]
        assert result.filtered_out == 0

    def test_item_may_route_to_both_destinations(self) -> None:
        policy = _policy()
        policy.calendar.categories.append(Category.ASSIGNMENT)
        result = apply_policy([build_item("a", course_code="CS101")], policy, now=NOW)
        assert [i.uid for i in result.task_items] == ["a"]
        assert [i.uid for i in result.calendar_items] == ["a"]

    def test_course_outside_included_list_is_filtered(self) -> None:
        result = apply_policy(
            [build_item("a", course_code="MATH221"), build_item("b", course_code="CS101")],
            _policy(),
            now=NOW,
        )
        assert [i.uid for i in result.task_items] == ["b"]
        assert result.filtered_out == 1

    def test_items_without_course_are_never_dropped_by_course_rules(self) -> None:
        result = apply_policy([build_item("x")], _policy(tasks=[]), now=NOW)
        assert [i.uid for i in result.task_items] == ["x"]

    def test_excluded_list_only_vetoes_when_honored(self) -> None:
        dest = TasksPolicy(included_courses=["CS101"], excluded_courses=["CS101"])
        item = build_item("a", course_code="CS101")
        assert routes_to(item, dest) is True
        assert routes_to(item, dest, honor_excluded=True) is False


class TestDateWindow:
    def test_item_entirely_outside_window_is_counted(self) -> None:
        policy = _policy(date_range=DateRange(past_days=7, future_days=30))
        old = build_item(
            "old",
            course_code="CS101",
            start=NOW - timedelta(days=10),
            end=NOW - timedelta(days=9),
        )
        far = build_item("far", course_code="CS101", start=NOW + timedelta(days=31))
        ok = build_item("ok", course_code="CS101")

        result = apply_policy([old, far, ok], policy, now=NOW)

        assert [i.uid for i in result.task_items] == ["ok"]
        assert result.outside_window == 2
        assert result.filtered_out == 2

    def test_item_overlapping_lower_bound_is_kept(self) -> None:
        policy = _policy(date_range=DateRange(past_days=7, future_days=30))
        spanning = build_item(
            "span",
            course_code="CS101",
            start=NOW - timedelta(days=8),
            end=NOW - timedelta(days=6),
        )
        result = apply_policy([spanning], policy, now=NOW)
        assert [i.uid for i in result.task_items] == ["span"]
        assert result.outside_window == 0

    def test_unset_bounds_are_open(self) -> None:
        ancient = build_item(
            "ancient",
            course_code="CS101",
            start=NOW - timedelta(days=4000),
            end=NOW - timedelta(days=4000),
        )
        result = apply_policy([ancient], _policy(), now=NOW)
        assert [i.uid for i in result.task_items] == ["ancient"]


class TestDiffPolicies:
    def test_first_run_has_no_changes(self) -> None:
        changes = diff_policies(None, _policy())
        assert changes.calendar == CourseChanges()
        assert changes.tasks == CourseChanges()

    def test_removed_and_added_courses(self) -> None:
        last = _policy(tasks=["CS101", "MATH221"])
        current = _policy(tasks=["MATH221", "PHYS150"])

        changes = diff_policies(last, current)

        assert changes.tasks.removed == ("CS101",)
        assert changes.tasks.added == ("PHYS150",)
        assert changes.calendar == CourseChanges()

    def test_course_codes_compare_normalized(self) -> None:
        last = _policy(tasks=["cs-101"])
        current = _policy(tasks=["CS 101"])
        assert diff_policies(last, current).tasks == CourseChanges()
