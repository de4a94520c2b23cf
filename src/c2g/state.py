"""SQLite state store: synced records, collections, policies and run log.

Tables
- synced_records: (owner_id, destination, stable_key) -> external id, collection,
  fingerprint and mirrored display fields
- collections:    (owner_id, destination, name) -> external id
- policies:       (owner_id, kind) -> policy JSON; kind is 'current' or 'last_applied'
- owners:         owner_id -> stored feed URL
- runs:           one row per finished sync run (counts + JSON report)

Design notes
- One State implements RecordStore and PolicyStore (c2g.sync.ports).
- The reconcile engine writes from worker threads, so the connection is opened
  with check_same_thread=False and every statement runs under one lock.
- All writes stamp updated_at in UTC ISO 8601.
- Upsert semantics keep re-runs idempotent.

Example
  from c2g.state import State
  with State("/data/state.sqlite") as st:
      st.set_current_policy("default", Policy())
      print(st.find_existing("default", Destination.TASKS))
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import stat
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import Policy
from .models import Collection, Destination, SyncedRecord
from .utils.timezones import parse_iso

__all__ = [
    "RunRecord",
    "State",
]

log = logging.getLogger(__name__)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_POLICY_CURRENT = "current"
_POLICY_LAST_APPLIED = "last_applied"

# Columns update_record may touch
_RECORD_FIELDS = {"external_id", "collection_id", "fingerprint", "course_code", "title", "start"}


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).strftime(ISO_FORMAT)


def _dt_to_db(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt_from_db(value: str | None) -> datetime | None:
    return parse_iso(value)


@dataclass(frozen=True)
class RunRecord:
    run_id: int
    owner_id: str
    started_at: str
    completed_at: str
    exit_code: int
    cancelled: bool
    counts: dict[str, int]
    report: dict[str, Any]


class State:
    """SQLite-backed state store, safe to share between threads of one process."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = self._connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    # Context manager support to ensure connections are closed deterministically
    def __enter__(self) -> State:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: object | None,
    ) -> None:
        self.close()

    # -------------
    # Connection
    # -------------

    def _connect(self, db_path: str) -> sqlite3.Connection:
        path = Path(db_path)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)

        # Longer timeout reduces 'database is locked' errors under contention
        conn = sqlite3.connect(str(path), timeout=30.0, check_same_thread=False)

        # Owner read/write only: the store holds feed URLs
        try:
            if path.exists() and not os.access(path, os.W_OK):
                log.warning(
                    "Database file %s is not writable by current user. "
                    "Please ensure proper file ownership.",
                    path,
                )
            else:
                path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        except OSError as e:
            log.warning(
                "Could not set restrictive permissions on database file %s: %s. "
                "Database will use default permissions.",
                path,
                e,
            )
        # - WAL improves durability and read concurrency
        # - busy_timeout helps during brief lock contention windows
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def close(self) -> None:
        with self._lock:
            if getattr(self, "_conn", None) is not None:
                self._conn.close()
                self._conn = None  # type: ignore[assignment]

    # -------------
    # Schema
    # -------------

    def _init_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS synced_records (
                  owner_id TEXT NOT NULL,
                  destination TEXT NOT NULL,    -- 'calendar' or 'tasks'
                  stable_key TEXT NOT NULL,     -- 'c2g:<uid>' for engine-created records
                  external_id TEXT NOT NULL,
                  collection_id TEXT NOT NULL,
                  fingerprint TEXT,
                  course_code TEXT,
                  title TEXT NOT NULL DEFAULT '',
                  start TEXT,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (owner_id, destination, stable_key)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS collections (
                  owner_id TEXT NOT NULL,
                  destination TEXT NOT NULL,
                  name TEXT NOT NULL,
                  external_id TEXT NOT NULL,
                  created_by_engine INTEGER NOT NULL DEFAULT 1,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (owner_id, destination, name)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS policies (
                  owner_id TEXT NOT NULL,
                  kind TEXT NOT NULL,
                  policy_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (owner_id, kind)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS owners (
                  owner_id TEXT PRIMARY KEY,
                  feed_url TEXT,
                  updated_at TEXT NOT NULL
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  owner_id TEXT NOT NULL,
                  started_at TEXT NOT NULL,
                  completed_at TEXT NOT NULL,
                  exit_code INTEGER NOT NULL,
                  cancelled INTEGER NOT NULL DEFAULT 0,
                  counts_json TEXT NOT NULL,
                  report_json TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    # -------------
    # Synced records
    # -------------

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> SyncedRecord:
        return SyncedRecord(
            owner_id=row["owner_id"],
            destination=Destination(row["destination"]),
            stable_key=row["stable_key"],
            external_id=row["external_id"],
            collection_id=row["collection_id"],
            fingerprint=row["fingerprint"],
            course_code=row["course_code"],
            title=row["title"] or "",
            start=_dt_from_db(row["start"]),
        )

    def find_existing(self, owner_id: str, destination: Destination) -> list[SyncedRecord]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM synced_records
                WHERE owner_id = ? AND destination = ?
                ORDER BY stable_key;
                """,
                (owner_id, str(destination)),
            )
            return [self._row_to_record(r) for r in cur.fetchall()]

    def get_record(
        self, owner_id: str, destination: Destination, stable_key: str
    ) -> SyncedRecord | None:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM synced_records
                WHERE owner_id = ? AND destination = ? AND stable_key = ?;
                """,
                (owner_id, str(destination), stable_key),
            )
            row = cur.fetchone()
            return self._row_to_record(row) if row else None

    def create_record(self, record: SyncedRecord) -> None:
        now = _utc_now_iso()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO synced_records(owner_id, destination, stable_key, external_id,
                    collection_id, fingerprint, course_code, title, start, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, destination, stable_key) DO UPDATE SET
                    external_id = excluded.external_id,
                    collection_id = excluded.collection_id,
                    fingerprint = excluded.fingerprint,
                    course_code = excluded.course_code,
                    title = excluded.title,
                    start = excluded.start,
                    updated_at = excluded.updated_at;
                """,
                (
                    record.owner_id,
                    str(record.destination),
                    record.stable_key,
                    record.external_id,
                    record.collection_id,
                    record.fingerprint,
                    record.course_code,
                    record.title,
                    _dt_to_db(record.start),
                    now,
                ),
            )
            self._conn.commit()

    def update_record(
        self, owner_id: str, destination: Destination, stable_key: str, **fields: Any
    ) -> None:
        unknown = set(fields) - _RECORD_FIELDS
        if unknown:
            raise ValueError(f"Unknown record fields: {sorted(unknown)}")
        if not fields:
            return
        values = {k: _dt_to_db(v) if k == "start" else v for k, v in fields.items()}
        assignments = ", ".join(f"{k} = ?" for k in values)
        with self._lock:
            cur = self._conn.execute(
                f"""
                UPDATE synced_records SET {assignments}, updated_at = ?
                WHERE owner_id = ? AND destination = ? AND stable_key = ?;
                """,
                (*values.values(), _utc_now_iso(), owner_id, str(destination), stable_key),
            )
            self._conn.commit()
            if cur.rowcount == 0:
                raise LookupError(f"No record {stable_key!r} for {owner_id}/{destination}")

    def delete_record(
        self,
        owner_id: str,
        destination: Destination,
        stable_key: str,
        external_id: str | None = None,
    ) -> None:
        """Delete a record; with `external_id`, only while it still points there."""
        sql = (
            "DELETE FROM synced_records"
            " WHERE owner_id = ? AND destination = ? AND stable_key = ?"
        )
        params: list[Any] = [owner_id, str(destination), stable_key]
        if external_id is not None:
            sql += " AND external_id = ?"
            params.append(external_id)
        with self._lock:
            self._conn.execute(sql + ";", params)
            self._conn.commit()

    def count_records(self, owner_id: str) -> dict[str, int]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT destination, COUNT(*) AS n FROM synced_records
                WHERE owner_id = ? GROUP BY destination;
                """,
                (owner_id,),
            )
            counts = {str(d): 0 for d in Destination}
            counts.update({r["destination"]: int(r["n"]) for r in cur.fetchall()})
            return counts

    # -------------
    # Collections
    # -------------

    @staticmethod
    def _row_to_collection(row: sqlite3.Row) -> Collection:
        return Collection(
            owner_id=row["owner_id"],
            destination=Destination(row["destination"]),
            name=row["name"],
            external_id=row["external_id"],
            created_by_engine=bool(row["created_by_engine"]),
        )

    def find_collection(
        self, owner_id: str, destination: Destination, name: str
    ) -> Collection | None:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM collections
                WHERE owner_id = ? AND destination = ? AND name = ?;
                """,
                (owner_id, str(destination), name),
            )
            row = cur.fetchone()
            return self._row_to_collection(row) if row else None

    def create_collection(
        self,
        owner_id: str,
        destination: Destination,
        name: str,
        external_id: str,
        *,
        created_by_engine: bool = True,
    ) -> Collection:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO collections(owner_id, destination, name, external_id,
                    created_by_engine, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(owner_id, destination, name) DO UPDATE SET
                    external_id = excluded.external_id,
                    created_by_engine = excluded.created_by_engine,
                    updated_at = excluded.updated_at;
                """,
                (
                    owner_id,
                    str(destination),
                    name,
                    external_id,
                    int(created_by_engine),
                    _utc_now_iso(),
                ),
            )
            self._conn.commit()
        return Collection(
            owner_id=owner_id,
            destination=destination,
            name=name,
            external_id=external_id,
            created_by_engine=created_by_engine,
        )

    def list_collections(self, owner_id: str, destination: Destination) -> list[Collection]:
        with self._lock:
            cur = self._conn.execute(
                """
                SELECT * FROM collections
                WHERE owner_id = ? AND destination = ?
                ORDER BY name;
                """,
                (owner_id, str(destination)),
            )
            return [self._row_to_collection(r) for r in cur.fetchall()]

    # -------------
    # Policies
    # -------------

    def _get_policy(self, owner_id: str, kind: str) -> Policy | None:
        with self._lock:
            cur = self._conn.execute(
                "SELECT policy_json FROM policies WHERE owner_id = ? AND kind = ?;",
                (owner_id, kind),
            )
            row = cur.fetchone()
        return Policy.model_validate_json(row["policy_json"]) if row else None

    def _set_policy(self, owner_id: str, kind: str, policy: Policy) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO policies(owner_id, kind, policy_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(owner_id, kind) DO UPDATE SET
                    policy_json = excluded.policy_json,
                    updated_at = excluded.updated_at;
                """,
                (owner_id, kind, policy.model_dump_json(), _utc_now_iso()),
            )
            self._conn.commit()

    def get_current_policy(self, owner_id: str) -> Policy | None:
        return self._get_policy(owner_id, _POLICY_CURRENT)

    def set_current_policy(self, owner_id: str, policy: Policy) -> None:
        self._set_policy(owner_id, _POLICY_CURRENT, policy)

    def get_last_applied_policy(self, owner_id: str) -> Policy | None:
        return self._get_policy(owner_id, _POLICY_LAST_APPLIED)

    def set_last_applied_policy(self, owner_id: str, policy: Policy) -> None:
        self._set_policy(owner_id, _POLICY_LAST_APPLIED, policy)

    # -------------
    # Owners
    # -------------

    def get_feed_url(self, owner_id: str) -> str | None:
        with self._lock:
            cur = self._conn.execute(
                "SELECT feed_url FROM owners WHERE owner_id = ?;", (owner_id,)
            )
            row = cur.fetchone()
            return row["feed_url"] if row and row["feed_url"] else None

    def set_feed_url(self, owner_id: str, feed_url: str | None) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO owners(owner_id, feed_url, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    feed_url = excluded.feed_url,
                    updated_at = excluded.updated_at;
                """,
                (owner_id, feed_url, _utc_now_iso()),
            )
            self._conn.commit()

    # -------------
    # Runs
    # -------------

    def record_run(
        self,
        owner_id: str,
        *,
        started_at: datetime,
        completed_at: datetime,
        exit_code: int,
        cancelled: bool,
        counts: dict[str, int],
        report: dict[str, Any],
    ) -> int:
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO runs(owner_id, started_at, completed_at, exit_code, cancelled,
                    counts_json, report_json)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    owner_id,
                    started_at.isoformat(),
                    completed_at.isoformat(),
                    exit_code,
                    int(cancelled),
                    json.dumps(counts, sort_keys=True),
                    json.dumps(report, sort_keys=True, default=str),
                ),
            )
            self._conn.commit()
            return int(cur.lastrowid or 0)

    def last_run(self, owner_id: str) -> RunRecord | None:
        with self._lock:
            cur = self._conn.execute(
                "SELECT * FROM runs WHERE owner_id = ? ORDER BY id DESC LIMIT 1;",
                (owner_id,),
            )
            row = cur.fetchone()
        if not row:
            return None
        return RunRecord(
            run_id=int(row["id"]),
            owner_id=row["owner_id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            exit_code=int(row["exit_code"]),
            cancelled=bool(row["cancelled"]),
            counts=json.loads(row["counts_json"]),
            report=json.loads(row["report_json"]),
        )
