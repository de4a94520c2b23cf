from __future__ import annotations

from typing import Any

import httpx
import pytest
from conftest import FakeRemote, build_item

from c2g.config import AppConfig, Policy
from c2g.feed.fetcher import FeedFetcher
from c2g.models import Category, Destination
from c2g.sync.orchestrator import (
    EXIT_FATAL,
    EXIT_OK,
    EXIT_PARTIAL,
    FileLock,
    Orchestrator,
    SyncRun,
)
from c2g.utils.http import create_client

FEED_URL = "https://canvas.example.edu/feeds/calendars/user_AbCdEf123456.ics"

FEED = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Instructure//Canvas//EN
X-WR-CALNAME:Canvas
BEGIN:VEVENT
UID:event-assignment-1
DTSTART:20260310T235900Z
DTEND:20260310T235900Z
SUMMARY:CS101 - Essay
END:VEVENT
BEGIN:VEVENT
UID:event-calendar-event-2
DTSTART:20260311T150000Z
DTEND:20260311T160000Z
SUMMARY:CS101 Lecture
END:VEVENT
BEGIN:VEVENT
UID:event-assignment-3
DTSTART:20260312T235900Z
SUMMARY:MATH221 - Problem set
END:VEVENT
END:VCALENDAR
"""


class FeedServer:
    """Serves FEED (or an error status) through an httpx MockTransport."""

    def __init__(self) -> None:
        self.status = 200
        self.body = FEED
        self.requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        return httpx.Response(self.status, text=self.body)


@pytest.fixture
def server() -> FeedServer:
    return FeedServer()


@pytest.fixture
def remotes() -> tuple[FakeRemote, FakeRemote]:
    return FakeRemote("cal"), FakeRemote("task")


def _cfg(tmp_path, **overrides: Any) -> AppConfig:
    data: dict[str, Any] = {
        "feed": {"url": FEED_URL},
        "state": {"db_path": str(tmp_path / "state.sqlite")},
        "runtime": {"lock_dir": str(tmp_path)},
        "sync": {"max_retries": 0, "run_timeout_sec": 60},
        "policy": {
            "calendar": {"included_courses": ["CS101"]},
            "tasks": {"included_courses": ["CS101"]},
        },
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return AppConfig.model_validate(data)


def _orchestrator(cfg, state, server, remotes) -> Orchestrator:
    fetcher = FeedFetcher.from_config(
        cfg.feed, client=create_client(transport=httpx.MockTransport(server.handler))
    )
    return Orchestrator(cfg, state=state, fetcher=fetcher, remotes=lambda: remotes)


class TestSync:
    def test_first_run_then_idempotent_rerun(self, tmp_path, state, server, remotes) -> None:
        cfg = _cfg(tmp_path)
        orch = _orchestrator(cfg, state, server, remotes)
        orch.create_calendar()

        code, report = orch.run()

        assert code == EXIT_OK
        assert [r.uid for r in report.calendar.created] == ["event-calendar-event-2"]
        assert [r.uid for r in report.tasks.created] == ["event-assignment-1"]
        assert [c.name for c in report.tasks.collections_created] == ["CS101"]
        assert report.metadata.total_parsed == 3
        assert report.metadata.to_calendar == 1
        assert report.metadata.to_tasks == 1
        assert report.metadata.filtered_out == 1
        assert state.get_last_applied_policy("default") == cfg.policy
        assert state.get_current_policy("default") == cfg.policy
        assert state.last_run("default").exit_code == EXIT_OK

        cal_remote, task_remote = remotes
        mutations = len(cal_remote.mutations()) + len(task_remote.mutations())
        code, report = orch.run()

        assert code == EXIT_OK
        assert report.aggregate()["unchanged"] == 2
        assert report.aggregate()["created"] == 0
        assert len(cal_remote.mutations()) + len(task_remote.mutations()) == mutations

    def test_removed_course_deletes_with_policy_reason(
        self, tmp_path, state, server, remotes
    ) -> None:
        orch = _orchestrator(_cfg(tmp_path), state, server, remotes)
        orch.create_calendar()
        orch.run()

        narrowed = _cfg(tmp_path, policy={"tasks": {"included_courses": ["MATH221"]}})
        code, report = _orchestrator(narrowed, state, server, remotes).run()

        assert code == EXIT_OK
        assert [(r.uid, r.reason) for r in report.tasks.deleted] == [
            ("event-assignment-1", "policy")
        ]
        assert [r.uid for r in report.tasks.created] == ["event-assignment-3"]
        assert state.get_last_applied_policy("default") == narrowed.policy

    def test_item_errors_are_partial(self, tmp_path, state, server, remotes) -> None:
        cal_remote, task_remote = remotes
        task_remote.fail_on["create"] = lambda fields: True
        orch = _orchestrator(_cfg(tmp_path), state, server, remotes)
        orch.create_calendar()

        code, report = orch.run()

        assert code == EXIT_PARTIAL
        assert report.tasks.errors[0].uid == "event-assignment-1"
        assert [r.uid for r in report.calendar.created] == ["event-calendar-event-2"]

    def test_missing_calendar_is_fatal_but_tasks_sync(
        self, tmp_path, state, server, remotes
    ) -> None:
        code, report = _orchestrator(_cfg(tmp_path), state, server, remotes).run()

        assert code == EXIT_FATAL
        assert report.calendar.errors[0].message == "No calendar found"
        assert [r.uid for r in report.tasks.created] == ["event-assignment-1"]
        # The policy is not marked applied while a pass failed as a whole
        assert state.get_last_applied_policy("default") is None

    def test_feed_failure_stops_before_google(self, tmp_path, state, server) -> None:
        server.status = 500
        called: list[bool] = []

        def remotes_factory():
            called.append(True)
            return FakeRemote(), FakeRemote()

        cfg = _cfg(tmp_path)
        fetcher = FeedFetcher.from_config(
            cfg.feed, client=create_client(transport=httpx.MockTransport(server.handler))
        )
        orch = Orchestrator(cfg, state=state, fetcher=fetcher, remotes=remotes_factory)

        code, report = orch.run()

        assert code == EXIT_FATAL
        assert called == []
        assert "HTTP 500" in report.calendar.errors[0].message
        assert state.last_run("default").exit_code == EXIT_FATAL

    def test_transport_errors_are_retried(self, tmp_path, state, server, remotes, monkeypatch):
        monkeypatch.setattr("c2g.utils.http.sleep", lambda _s: None)
        server.status = 503
        cfg = _cfg(tmp_path, sync={"max_retries": 2})

        code, _ = _orchestrator(cfg, state, server, remotes).run()

        assert code == EXIT_FATAL
        assert server.requests == 3

    def test_malformed_feed_is_fatal(self, tmp_path, state, server, remotes) -> None:
        server.body = "<html>Please log in</html>"

        code, report = _orchestrator(_cfg(tmp_path), state, server, remotes).run()

        assert code == EXIT_FATAL
        assert report.tasks.fatal is True

    def test_feed_url_resolution(self, tmp_path, state, server, remotes) -> None:
        cfg = _cfg(tmp_path, feed={"url": None})
        orch = _orchestrator(cfg, state, server, remotes)

        code, report = orch.run()
        assert code == EXIT_FATAL
        assert report.calendar.errors[0].message == "No feed URL configured"

        orch.create_calendar()
        code, _ = orch.run(feed_url=FEED_URL)
        assert code == EXIT_OK
        assert state.get_feed_url("default") == FEED_URL

        # Stored URL is used on later runs
        code, _ = orch.run()
        assert code == EXIT_OK

    def test_dry_run_writes_nothing(self, tmp_path, state, server, remotes) -> None:
        _orchestrator(_cfg(tmp_path), state, server, remotes).create_calendar()
        cfg = _cfg(tmp_path, sync={"dry_run": True})

        code, report = _orchestrator(cfg, state, server, remotes).run(feed_url=FEED_URL)

        assert code == EXIT_OK
        assert report.aggregate()["created"] == 2
        cal_remote, task_remote = remotes
        assert cal_remote.mutations() == [] and task_remote.mutations() == []
        assert task_remote.collections == {}
        assert state.count_records("default") == {"calendar": 0, "tasks": 0}
        assert state.last_run("default") is None
        assert state.get_current_policy("default") is None
        assert state.get_feed_url("default") is None

    def test_held_lock_is_fatal(self, tmp_path, state, server, remotes) -> None:
        orch = _orchestrator(_cfg(tmp_path), state, server, remotes)
        with FileLock(str(tmp_path / "c2g-default.lock")):
            code, report = orch.run()

        assert code == EXIT_FATAL
        assert "Another run is in progress" in report.calendar.errors[0].message
        assert server.requests == 0


class TestSyncRun:
    def test_assignment_to_tasks_and_event_to_calendar(self, state, remotes) -> None:
        cal_remote, task_remote = remotes
        cal_id = cal_remote.create_collection("Canvas")
        state.create_collection("u1", Destination.CALENDAR, "Canvas", cal_id)
        policy = Policy.model_validate(
            {
                "calendar": {"categories": ["event"], "included_courses": ["CS101"]},
                "tasks": {"categories": ["assignment"], "included_courses": ["CS101"]},
            }
        )
        items = [
            build_item("a", course_code="CS101", category=Category.ASSIGNMENT),
            build_item("b", course_code="CS101", category=Category.EVENT),
        ]
        run = SyncRun(
            state,
            cal_remote,
            task_remote,
            owner_id="u1",
            calendar_name="Canvas",
            sync_cfg=AppConfig().sync,
        )

        result = run.execute(items, policy, None)

        report = result.report
        assert [r.uid for r in report.calendar.created] == ["b"]
        assert report.calendar.counts()["created"] == 1
        assert [r.uid for r in report.tasks.created] == ["a"]
        assert [c.name for c in report.tasks.collections_created] == ["CS101"]
        assert report.aggregate()["errors"] == 0
        assert result.succeeded is True
        assert result.applied_policy == policy

    def test_cancelled_run_is_partial_and_keeps_last_policy(self, state, remotes) -> None:
        cfg = AppConfig.model_validate({"sync": {"run_timeout_sec": None}})
        cal_remote, task_remote = remotes
        run = SyncRun(
            state,
            cal_remote,
            task_remote,
            owner_id="u1",
            calendar_name="Canvas",
            sync_cfg=cfg.sync,
        )
        last = Policy()
        run.cancel()

        result = run.execute([build_item("a")], Policy(), last)

        assert result.report.metadata.cancelled is True
        assert result.succeeded is False
        assert result.applied_policy is last
        assert task_remote.mutations() == []


class TestMaintenance:
    def test_status_and_reset(self, tmp_path, state, server, remotes) -> None:
        orch = _orchestrator(_cfg(tmp_path), state, server, remotes)
        orch.create_calendar()
        orch.run()

        info = orch.status()
        assert info["records"] == {"calendar": 1, "tasks": 1}
        assert info["calendar"] == ["Canvas"]
        assert info["task_lists"] == ["CS101"]
        assert info["last_run"]["exit_code"] == EXIT_OK
        assert info["policy_applied"] is True

        code, report = orch.reset()

        assert code == EXIT_OK
        assert report.aggregate()["deleted"] == 2
        assert state.count_records("default") == {"calendar": 0, "tasks": 0}
        assert state.find_existing("default", Destination.TASKS) == []
