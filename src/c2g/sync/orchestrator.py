"""Top-level sync orchestrator.

Responsibilities
- Enforce one run per owner at a time using a filesystem lock file
- Resolve the feed URL, fetch (with caller-side retries) and parse the feed
- Read the current and last-applied policy once, run both destination passes
  concurrently, write the last-applied policy once at the end
- Provide the combined report and an exit code

Exit codes
- 0: success
- 2: partial (item errors, or the run was cancelled)
- 3: fatal (could not start, bad feed, or a destination pass failed as a whole)

Notes
- The last-applied policy only advances after a run with no pass-level failure
  that was not cancelled; otherwise the next run repeats the same policy diff.
- Dry-run reads everything and writes nothing (no remote calls, no state).
"""

from __future__ import annotations

import errno
import logging
import os
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from types import TracebackType

from ..config import AppConfig, Policy, SyncConfig
from ..errors import C2GError, FeedError, error_message
from ..feed.fetcher import FeedFetcher
from ..feed.parser import FeedParser
from ..google.auth import SCOPES_ALL, get_credentials
from ..google.calendar import CalendarClient
from ..google.tasks import TasksClient
from ..models import Collection, Destination, SourceItem
from ..state import State
from ..utils.http import RetryConfig, call_with_retries
from .calendar_sync import CalendarSync
from .policy import apply_policy, diff_policies
from .ports import RemoteApi
from .report import CombinedReport, Outcome, RunMetadata, TaskOutcome, combine
from .tasks_sync import CollectionRouter

__all__ = [
    "EXIT_FATAL",
    "EXIT_OK",
    "EXIT_PARTIAL",
    "FileLock",
    "Orchestrator",
    "RunResult",
    "SyncRun",
]

log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_PARTIAL = 2
EXIT_FATAL = 3

RemotesFactory = Callable[[], tuple[RemoteApi, RemoteApi]]


def _now() -> datetime:
    return datetime.now(tz=UTC)


class FileLock:
    """Simple non-blocking PID file lock using O_CREAT|O_EXCL.

    Lock is removed on explicit release; a lock left behind by a dead process
    is detected through its PID and replaced.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd: int | None = None

    def _create(self) -> None:
        self._fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.write(self._fd, str(os.getpid()).encode("utf-8"))
        os.fsync(self._fd)

    def acquire(self) -> None:
        try:
            self._create()
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            if self._is_stale_lock():
                log.warning("Removing stale lock file at %s", self.path)
                try:
                    os.unlink(self.path)
                    self._create()
                    return
                except OSError:
                    # Another process may have taken the lock in the meantime
                    pass
            raise RuntimeError(f"Another run is in progress (lock exists at {self.path})") from e

    def _is_stale_lock(self) -> bool:
        """Check if the lock file holds the PID of a process that no longer exists."""
        try:
            with open(self.path, encoding="utf-8") as f:
                pid_str = f.read().strip()
        except (FileNotFoundError, PermissionError):
            return True
        if not pid_str.isdigit():
            return True
        try:
            os.kill(int(pid_str), 0)  # signal 0 only checks existence
        except ProcessLookupError:
            return True
        except PermissionError:
            # Exists, owned by someone else
            return False
        return False

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


@dataclass(frozen=True)
class RunResult:
    report: CombinedReport
    # Policy the run brought the destinations in line with; the previous one when
    # the run failed or was cancelled
    applied_policy: Policy | None

    @property
    def succeeded(self) -> bool:
        return not self.report.fatal and not self.report.metadata.cancelled


class SyncRun:
    """One reconciliation of both destinations against a parsed feed.

    Pure with respect to policy state: the last-applied policy comes in as an
    argument and the policy to persist goes out in the result.
    """

    def __init__(
        self,
        state: State,
        calendar_remote: RemoteApi,
        tasks_remote: RemoteApi,
        *,
        owner_id: str,
        calendar_name: str,
        sync_cfg: SyncConfig,
    ) -> None:
        self.state = state
        self.calendar_remote = calendar_remote
        self.tasks_remote = tasks_remote
        self.owner_id = owner_id
        self.calendar_name = calendar_name
        self.sync_cfg = sync_cfg
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        if not self.cancel_event.is_set():
            log.warning("run-cancel-requested", extra={"owner_id": self.owner_id})
        self.cancel_event.set()

    def execute(
        self,
        items: Sequence[SourceItem],
        policy: Policy,
        last_policy: Policy | None,
        *,
        now: datetime | None = None,
    ) -> RunResult:
        started = _now()
        timer: threading.Timer | None = None
        if self.sync_cfg.run_timeout_sec:
            timer = threading.Timer(self.sync_cfg.run_timeout_sec, self.cancel)
            timer.daemon = True
            timer.start()

        try:
            filtered = apply_policy(
                items,
                policy,
                now=now or started,
                honor_excluded=self.sync_cfg.honor_excluded_courses,
            )
            changes = diff_policies(last_policy, policy)
            if changes.calendar.removed or changes.tasks.removed:
                log.info(
                    "policy-courses-removed calendar=%s tasks=%s",
                    ",".join(changes.calendar.removed) or "-",
                    ",".join(changes.tasks.removed) or "-",
                )

            calendar = CalendarSync(
                self.state,
                self.calendar_remote,
                owner_id=self.owner_id,
                calendar_name=self.calendar_name,
                max_workers=self.sync_cfg.max_concurrency,
                cancel=self.cancel_event,
                dry_run=self.sync_cfg.dry_run,
            )
            router = CollectionRouter(
                self.state,
                self.tasks_remote,
                owner_id=self.owner_id,
                policy=policy.tasks,
                max_workers=self.sync_cfg.max_concurrency,
                cancel=self.cancel_event,
                dry_run=self.sync_cfg.dry_run,
            )
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix="c2g-pass") as pool:
                cal_future = pool.submit(
                    calendar.run, filtered.calendar_items, changes.calendar.removed
                )
                task_future = pool.submit(router.route, filtered.task_items, changes.tasks.removed)
                cal_outcome = cal_future.result()
                task_outcome = task_future.result()
        finally:
            if timer is not None:
                timer.cancel()

        metadata = RunMetadata(
            total_parsed=len(items),
            to_calendar=len(filtered.calendar_items),
            to_tasks=len(filtered.task_items),
            outside_window=filtered.outside_window,
            filtered_out=filtered.filtered_out,
            started_at=started,
            completed_at=_now(),
            cancelled=self.cancel_event.is_set(),
        )
        report = combine(cal_outcome, task_outcome, metadata)
        ok = not report.fatal and not metadata.cancelled
        return RunResult(report=report, applied_policy=policy if ok else last_policy)


def _fatal_report(message: str, started: datetime, total_parsed: int = 0) -> CombinedReport:
    metadata = RunMetadata(
        total_parsed=total_parsed,
        to_calendar=0,
        to_tasks=0,
        outside_window=0,
        filtered_out=0,
        started_at=started,
        completed_at=_now(),
    )
    return combine(Outcome.failed(message), TaskOutcome.failed(message), metadata)


def exit_code_for(report: CombinedReport) -> int:
    if report.fatal:
        return EXIT_FATAL
    if report.aggregate()["errors"] or report.metadata.cancelled:
        return EXIT_PARTIAL
    return EXIT_OK


class Orchestrator:
    def __init__(
        self,
        cfg: AppConfig,
        *,
        state: State | None = None,
        fetcher: FeedFetcher | None = None,
        remotes: RemotesFactory | None = None,
    ) -> None:
        self.cfg = cfg
        self._state = state
        self._fetcher = fetcher
        self._remotes = remotes
        self._current: SyncRun | None = None

    # -------------
    # Dependencies
    # -------------

    def _build_state(self) -> State:
        return self._state or State(self.cfg.state.db_path)

    def _release_state(self, state: State) -> None:
        if state is not self._state:
            state.close()

    def _build_fetcher(self) -> FeedFetcher:
        return self._fetcher or FeedFetcher.from_config(self.cfg.feed)

    def _build_remotes(self) -> tuple[RemoteApi, RemoteApi]:
        if self._remotes is not None:
            return self._remotes()
        creds = get_credentials(self.cfg.google, scopes=SCOPES_ALL)
        return CalendarClient(creds), TasksClient(creds)

    def _lock_path(self, owner_id: str) -> str:
        return os.path.join(self.cfg.runtime.lock_dir, f"c2g-{owner_id}.lock")

    def _retry_config(self) -> RetryConfig:
        # Same knobs as SyncConfig so retry behaviour is configured in one place
        return RetryConfig(
            max_retries=self.cfg.sync.max_retries,
            backoff_initial_sec=self.cfg.sync.backoff_initial_sec,
        )

    def cancel(self) -> None:
        """Ask the in-progress run (if any) to stop starting new downstream calls."""
        if self._current is not None:
            self._current.cancel()

    # -------------
    # Sync
    # -------------

    def run(
        self, owner_id: str | None = None, feed_url: str | None = None
    ) -> tuple[int, CombinedReport]:
        """Run one sync for an owner; returns exit code and combined report."""
        owner = owner_id or self.cfg.runtime.owner_id
        started = _now()
        lock_path = self._lock_path(owner)
        log.info("acquiring-lock %s", lock_path)
        lock = FileLock(lock_path)
        try:
            lock.acquire()
        except (RuntimeError, OSError) as e:
            log.error("lock-failed %s", e)
            return EXIT_FATAL, _fatal_report(error_message(e), started)

        try:
            state = self._build_state()
            try:
                return self._run_locked(state, owner, feed_url, started)
            except Exception as exc:
                log.exception("sync-fatal")
                return EXIT_FATAL, _fatal_report(error_message(exc), started)
            finally:
                self._release_state(state)
        finally:
            lock.release()

    def _run_locked(
        self, state: State, owner: str, feed_url: str | None, started: datetime
    ) -> tuple[int, CombinedReport]:
        dry_run = self.cfg.sync.dry_run
        policy = self.cfg.policy
        last_policy = state.get_last_applied_policy(owner)
        if not dry_run:
            state.set_current_policy(owner, policy)

        url = feed_url or state.get_feed_url(owner) or self.cfg.feed.url
        if not url:
            log.error("feed-url-missing", extra={"owner_id": owner})
            return EXIT_FATAL, _fatal_report("No feed URL configured", started)
        if feed_url and not dry_run:
            state.set_feed_url(owner, feed_url)

        # Fetch + parse: failures here stop the run before any downstream call
        try:
            fetcher = self._build_fetcher()
            raw = call_with_retries(lambda: fetcher.fetch(url), self._retry_config())
            items = FeedParser(max_entries=self.cfg.feed.max_entries).parse(raw)
        except FeedError as exc:
            log.error("feed-failed %s: %s", type(exc).__name__, error_message(exc))
            report = _fatal_report(error_message(exc), started)
            return self._finish(state, owner, EXIT_FATAL, report)

        try:
            calendar_remote, tasks_remote = self._build_remotes()
        except C2GError as exc:
            log.error("google-auth-init-failed %s", error_message(exc))
            report = _fatal_report(error_message(exc), started, total_parsed=len(items))
            return self._finish(state, owner, EXIT_FATAL, report)

        run = SyncRun(
            state,
            calendar_remote,
            tasks_remote,
            owner_id=owner,
            calendar_name=self.cfg.google.calendar_name,
            sync_cfg=self.cfg.sync,
        )
        self._current = run
        try:
            result = run.execute(items, policy, last_policy)
        finally:
            self._current = None

        if result.succeeded and not dry_run and result.applied_policy is not None:
            state.set_last_applied_policy(owner, result.applied_policy)

        report = result.report
        code = exit_code_for(report)
        agg = report.aggregate()
        log.info(
            "sync-finished exit=%d created=%d updated=%d deleted=%d unchanged=%d errors=%d",
            code,
            agg["created"],
            agg["updated"],
            agg["deleted"],
            agg["unchanged"],
            agg["errors"],
            extra={"owner_id": owner, "dry_run": dry_run},
        )
        return self._finish(state, owner, code, report)

    def _finish(
        self, state: State, owner: str, code: int, report: CombinedReport
    ) -> tuple[int, CombinedReport]:
        if not self.cfg.sync.dry_run:
            state.record_run(
                owner,
                started_at=report.metadata.started_at,
                completed_at=report.metadata.completed_at,
                exit_code=code,
                cancelled=report.metadata.cancelled,
                counts=report.aggregate(),
                report=report.to_dict(),
            )
        return code, report

    # -------------
    # Maintenance
    # -------------

    def reset(self, owner_id: str | None = None) -> tuple[int, CombinedReport]:
        """Delete every engine-created item of the owner in both destinations.

        User-authored records (no provenance prefix) are left alone.
        """
        owner = owner_id or self.cfg.runtime.owner_id
        started = _now()
        try:
            lock = FileLock(self._lock_path(owner))
            lock.acquire()
        except (RuntimeError, OSError) as e:
            log.error("lock-failed %s", e)
            return EXIT_FATAL, _fatal_report(error_message(e), started)

        try:
            state = self._build_state()
            try:
                try:
                    calendar_remote, tasks_remote = self._build_remotes()
                except C2GError as exc:
                    return EXIT_FATAL, _fatal_report(error_message(exc), started)
                workers = self.cfg.sync.max_concurrency
                cal_outcome = CalendarSync(
                    state,
                    calendar_remote,
                    owner_id=owner,
                    calendar_name=self.cfg.google.calendar_name,
                    max_workers=workers,
                    dry_run=self.cfg.sync.dry_run,
                ).reset()
                task_outcome = CollectionRouter(
                    state,
                    tasks_remote,
                    owner_id=owner,
                    policy=self.cfg.policy.tasks,
                    max_workers=workers,
                    dry_run=self.cfg.sync.dry_run,
                ).reset()
            finally:
                self._release_state(state)
        finally:
            lock.release()

        metadata = RunMetadata(
            total_parsed=0,
            to_calendar=0,
            to_tasks=0,
            outside_window=0,
            filtered_out=0,
            started_at=started,
            completed_at=_now(),
        )
        report = combine(cal_outcome, task_outcome, metadata)
        log.info("reset-finished deleted=%d", report.aggregate()["deleted"])
        return exit_code_for(report), report

    def create_calendar(
        self, owner_id: str | None = None, name: str | None = None
    ) -> tuple[Collection, bool]:
        owner = owner_id or self.cfg.runtime.owner_id
        state = self._build_state()
        try:
            calendar_remote, _ = self._build_remotes()
            return CalendarSync(
                state,
                calendar_remote,
                owner_id=owner,
                calendar_name=name or self.cfg.google.calendar_name,
            ).create_calendar()
        finally:
            self._release_state(state)

    def status(self, owner_id: str | None = None) -> dict[str, object]:
        owner = owner_id or self.cfg.runtime.owner_id
        state = self._build_state()
        try:
            last = state.last_run(owner)
            return {
                "owner_id": owner,
                "records": state.count_records(owner),
                "calendar": [c.name for c in state.list_collections(owner, Destination.CALENDAR)],
                "task_lists": [c.name for c in state.list_collections(owner, Destination.TASKS)],
                "last_run": None
                if last is None
                else {
                    "started_at": last.started_at,
                    "completed_at": last.completed_at,
                    "exit_code": last.exit_code,
                    "cancelled": last.cancelled,
                    "counts": last.counts,
                },
                "policy_applied": state.get_last_applied_policy(owner) is not None,
            }
        finally:
            self._release_state(state)
