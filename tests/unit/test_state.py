from __future__ import annotations

import os
import stat
import threading
from datetime import UTC, datetime

import pytest

from c2g.config import Policy, TasksPolicy
from c2g.models import Destination, SyncedRecord
from c2g.state import State

OWNER = "u1"


def _record(key: str = "c2g:a", **kwargs) -> SyncedRecord:
    fields = {
        "owner_id": OWNER,
        "destination": Destination.TASKS,
        "stable_key": key,
        "external_id": f"ext-{key}",
        "collection_id": "list-1",
        "fingerprint": "fp1",
        "course_code": "CS101",
        "title": "Essay",
        "start": datetime(2026, 3, 10, 23, 59, tzinfo=UTC),
    }
    fields.update(kwargs)
    return SyncedRecord(**fields)


class TestRecords:
    def test_create_and_find(self, state: State) -> None:
        state.create_record(_record())

        found = state.find_existing(OWNER, Destination.TASKS)

        assert found == [_record()]
        assert state.find_existing(OWNER, Destination.CALENDAR) == []
        assert state.find_existing("other", Destination.TASKS) == []

    def test_create_is_an_upsert(self, state: State) -> None:
        state.create_record(_record())
        state.create_record(_record(external_id="ext-new", fingerprint="fp2"))

        rec = state.get_record(OWNER, Destination.TASKS, "c2g:a")

        assert rec is not None
        assert rec.external_id == "ext-new"
        assert rec.fingerprint == "fp2"
        assert state.count_records(OWNER) == {"calendar": 0, "tasks": 1}

    def test_update_selected_fields(self, state: State) -> None:
        state.create_record(_record())
        new_start = datetime(2026, 3, 11, 12, 0, tzinfo=UTC)

        state.update_record(
            OWNER, Destination.TASKS, "c2g:a", fingerprint="fp2", title="Essay v2", start=new_start
        )

        rec = state.get_record(OWNER, Destination.TASKS, "c2g:a")
        assert rec is not None
        assert (rec.fingerprint, rec.title, rec.start) == ("fp2", "Essay v2", new_start)
        assert rec.external_id == "ext-c2g:a"

    def test_update_rejects_unknown_fields(self, state: State) -> None:
        state.create_record(_record())
        with pytest.raises(ValueError, match="Unknown record fields"):
            state.update_record(OWNER, Destination.TASKS, "c2g:a", colour="x")

    def test_update_missing_record(self, state: State) -> None:
        with pytest.raises(LookupError):
            state.update_record(OWNER, Destination.TASKS, "c2g:missing", title="x")

    def test_delete(self, state: State) -> None:
        state.create_record(_record())
        state.create_record(_record("c2g:b"))

        state.delete_record(OWNER, Destination.TASKS, "c2g:a")

        assert [r.stable_key for r in state.find_existing(OWNER, Destination.TASKS)] == ["c2g:b"]

    def test_delete_guarded_by_external_id(self, state: State) -> None:
        state.create_record(_record(external_id="ext-new"))

        state.delete_record(OWNER, Destination.TASKS, "c2g:a", "ext-old")
        assert state.get_record(OWNER, Destination.TASKS, "c2g:a") is not None

        state.delete_record(OWNER, Destination.TASKS, "c2g:a", "ext-new")
        assert state.get_record(OWNER, Destination.TASKS, "c2g:a") is None

    def test_concurrent_writes_from_threads(self, state: State) -> None:
        def write(n: int) -> None:
            state.create_record(_record(f"c2g:{n:03d}"))

        threads = [threading.Thread(target=write, args=(n,)) for n in range(25)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert state.count_records(OWNER)["tasks"] == 25


class TestCollections:
    def test_create_find_list(self, state: State) -> None:
        state.create_collection(OWNER, Destination.TASKS, "MATH221", "list-2")
        adopted = state.create_collection(
            OWNER, Destination.TASKS, "CS101", "list-1", created_by_engine=False
        )

        assert adopted.created_by_engine is False
        assert state.find_collection(OWNER, Destination.TASKS, "CS101") == adopted
        assert state.find_collection(OWNER, Destination.CALENDAR, "CS101") is None
        names = [c.name for c in state.list_collections(OWNER, Destination.TASKS)]
        assert names == ["CS101", "MATH221"]

    def test_recreate_replaces_external_id(self, state: State) -> None:
        state.create_collection(OWNER, Destination.CALENDAR, "Canvas", "cal-old")
        state.create_collection(OWNER, Destination.CALENDAR, "Canvas", "cal-new")

        coll = state.find_collection(OWNER, Destination.CALENDAR, "Canvas")
        assert coll is not None and coll.external_id == "cal-new"


class TestPoliciesAndOwners:
    def test_policy_round_trip(self, state: State) -> None:
        policy = Policy(tasks=TasksPolicy(included_courses=["CS101"], grouping="consolidated"))
        assert state.get_current_policy(OWNER) is None

        state.set_current_policy(OWNER, policy)
        state.set_last_applied_policy(OWNER, Policy())

        assert state.get_current_policy(OWNER) == policy
        assert state.get_last_applied_policy(OWNER) == Policy()

    def test_feed_url(self, state: State) -> None:
        assert state.get_feed_url(OWNER) is None
        state.set_feed_url(OWNER, "https://canvas.example.edu/feeds/calendars/user_a.ics")
        state.set_feed_url(OWNER, "https://canvas.example.edu/feeds/calendars/user_b.ics")
        assert state.get_feed_url(OWNER) == "https://canvas.example.edu/feeds/calendars/user_b.ics"


class TestRuns:
    def test_record_and_read_last_run(self, state: State) -> None:
        assert state.last_run(OWNER) is None
        started = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
        for code in (0, 2):
            state.record_run(
                OWNER,
                started_at=started,
                completed_at=started,
                exit_code=code,
                cancelled=code == 2,
                counts={"created": code},
                report={"calendar": {}},
            )

        last = state.last_run(OWNER)

        assert last is not None
        assert last.exit_code == 2
        assert last.cancelled is True
        assert last.counts == {"created": 2}
        assert last.report == {"calendar": {}}


def test_db_file_is_owner_only(tmp_path) -> None:
    path = tmp_path / "nested" / "state.sqlite"
    with State(str(path)):
        pass
    mode = stat.S_IMODE(os.stat(path).st_mode)
    assert mode == stat.S_IRUSR | stat.S_IWUSR
