"""Reconcile engine: diff incoming items against stored records, apply the diff.

One engine instance serves one destination; `reconcile` handles one
collection (a calendar or a task list) at a time.

Plan
- incoming items keyed by stable key, fingerprinted; on a duplicate uid the
  first entry wins
- no record            -> create
- fingerprint differs  -> update
- fingerprint equal    -> unchanged
- record with the provenance prefix and no incoming item -> delete, reason
  "policy" when its course was removed from the included list, else "absent"
- records without the prefix are left alone

Execution
- each create/update/delete is independent; a failure is recorded against the
  item's uid and the batch continues
- operations run on a ThreadPoolExecutor bounded by `max_workers`
- results are emitted in plan order regardless of completion order
- once `cancel` is set, operations that have not started report
  "run cancelled" and make no remote call
- dry-run decides but never writes (neither remote nor store)

Reset
- `untracked_records` lists a collection remotely and turns engine-keyed items
  without a store record into records, so a reset can delete them as well
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, ClassVar

from ..errors import error_message
from ..models import (
    Collection,
    Destination,
    SourceItem,
    SyncedRecord,
    is_engine_key,
    uid_from_key,
)
from ..utils.hashing import fingerprint
from .ports import RecordStore, RemoteApi
from .report import ItemError, ItemRef, Outcome

__all__ = ["CANCELLED_MESSAGE", "ReconcileEngine"]

log = logging.getLogger(__name__)

CANCELLED_MESSAGE = "run cancelled"

FieldMapper = Callable[[SourceItem, str], Mapping[str, Any]]
KeyReader = Callable[[Mapping[str, Any]], str | None]

_CREATE = "create"
_UPDATE = "update"
_DELETE = "delete"
_UNCHANGED = "unchanged"


@dataclass(frozen=True)
class _ItemOp:
    stable_key: str
    item: SourceItem
    fingerprint: str

    reason: ClassVar[str | None] = None

    @property
    def uid(self) -> str:
        return self.item.uid

    @property
    def title(self) -> str:
        return self.item.title


@dataclass(frozen=True)
class _Create(_ItemOp):
    action: ClassVar[str] = _CREATE


@dataclass(frozen=True)
class _Update(_ItemOp):
    record: SyncedRecord

    action: ClassVar[str] = _UPDATE


@dataclass(frozen=True)
class _Unchanged(_Update):
    action: ClassVar[str] = _UNCHANGED


@dataclass(frozen=True)
class _Delete:
    stable_key: str
    record: SyncedRecord
    reason: str

    action: ClassVar[str] = _DELETE

    @property
    def uid(self) -> str:
        return uid_from_key(self.stable_key)

    @property
    def title(self) -> str:
        return self.record.title


_Op = _Create | _Update | _Delete


class ReconcileEngine:
    def __init__(
        self,
        store: RecordStore,
        remote: RemoteApi,
        *,
        owner_id: str,
        destination: Destination,
        to_fields: FieldMapper,
        key_of: KeyReader | None = None,
        max_workers: int = 4,
        cancel: threading.Event | None = None,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.remote = remote
        self.owner_id = owner_id
        self.destination = destination
        self.to_fields = to_fields
        self.key_of = key_of
        self.max_workers = max(1, max_workers)
        self.cancel = cancel or threading.Event()
        self.dry_run = dry_run

    # -------------
    # Planning
    # -------------

    def plan(
        self,
        items: Iterable[SourceItem],
        existing: Iterable[SyncedRecord],
        removed_courses: Iterable[str] = (),
    ) -> list[_Op]:
        by_key = {rec.stable_key: rec for rec in existing}
        removed = set(removed_courses)

        incoming: dict[str, tuple[SourceItem, str]] = {}
        for item in items:
            key = item.stable_key
            if key in incoming:
                log.warning(
                    "duplicate-uid-ignored",
                    extra={"uid": item.uid, "destination": str(self.destination)},
                )
                continue
            incoming[key] = (item, fingerprint(item))

        ops: list[_Op] = []
        for key, (item, fp) in incoming.items():
            rec = by_key.get(key)
            if rec is None:
                ops.append(_Create(key, item, fp))
            elif rec.fingerprint != fp:
                ops.append(_Update(key, item, fp, rec))
            else:
                ops.append(_Unchanged(key, item, fp, rec))

        for key, rec in by_key.items():
            if key in incoming or not rec.engine_owned:
                continue
            reason = "policy" if rec.course_code and rec.course_code in removed else "absent"
            ops.append(_Delete(key, rec, reason))
        return ops

    def untracked_records(
        self, collection: Collection, tracked: Iterable[SyncedRecord]
    ) -> list[SyncedRecord]:
        """Engine-keyed items in the remote collection that have no store record.

        These are left behind when the state database is lost or reset. Items
        whose key is already tracked elsewhere in the collection are skipped.
        """
        if self.key_of is None or not collection.external_id:
            return []
        rows = list(tracked)
        known_ids = {rec.external_id for rec in rows}
        known_keys = {rec.stable_key for rec in rows}
        found: list[SyncedRecord] = []
        for remote_item in self.remote.list_items(collection.external_id):
            key = self.key_of(remote_item)
            ext_id = remote_item.get("id")
            if not key or not is_engine_key(key) or not ext_id or ext_id in known_ids:
                continue
            if key in known_keys:
                log.warning(
                    "untracked-duplicate-skipped",
                    extra={"uid": uid_from_key(key), "collection": collection.name},
                )
                continue
            known_keys.add(key)
            found.append(
                SyncedRecord(
                    owner_id=self.owner_id,
                    destination=self.destination,
                    stable_key=key,
                    external_id=str(ext_id),
                    collection_id=collection.external_id,
                    title=str(remote_item.get("summary") or remote_item.get("title") or ""),
                )
            )
        if found:
            log.info(
                "untracked-items-found count=%d",
                len(found),
                extra={"destination": str(self.destination), "collection": collection.name},
            )
        return found

    # -------------
    # Execution
    # -------------

    def reconcile(
        self,
        items: Iterable[SourceItem],
        existing: Iterable[SyncedRecord],
        *,
        collection: Collection,
        removed_courses: Iterable[str] = (),
    ) -> Outcome:
        ops = self.plan(items, existing, removed_courses)
        counts = {a: 0 for a in (_CREATE, _UPDATE, _DELETE, _UNCHANGED)}
        for op in ops:
            counts[op.action] += 1
        log.info(
            "reconcile-plan create=%d update=%d delete=%d unchanged=%d",
            counts[_CREATE],
            counts[_UPDATE],
            counts[_DELETE],
            counts[_UNCHANGED],
            extra={"destination": str(self.destination), "collection": collection.name},
        )

        outcome = Outcome()
        mutating = [op for op in ops if not isinstance(op, _Unchanged)]
        if mutating and not self.dry_run:
            with ThreadPoolExecutor(
                max_workers=min(self.max_workers, len(mutating)),
                thread_name_prefix=f"c2g-{self.destination}",
            ) as pool:
                futures = {
                    op.stable_key: pool.submit(self._apply, op, collection) for op in mutating
                }
                results = {key: fut.result() for key, fut in futures.items()}
        else:
            results = {}

        for op in ops:
            if isinstance(op, _Unchanged):
                outcome.unchanged.append(self._ref(op, collection, op.record.external_id))
                continue
            if self.dry_run:
                ext = None if isinstance(op, _Create) else op.record.external_id
                self._bucket(outcome, op.action).append(self._ref(op, collection, ext))
                continue
            result = results[op.stable_key]
            if isinstance(result, ItemError):
                outcome.errors.append(result)
            else:
                self._bucket(outcome, op.action).append(result)
        return outcome

    def _apply(self, op: _Op, collection: Collection) -> ItemRef | ItemError:
        if self.cancel.is_set():
            return ItemError(message=CANCELLED_MESSAGE, uid=op.uid, collection=collection.name)
        try:
            if isinstance(op, _Create):
                return self._create(op, collection)
            if isinstance(op, _Update):
                return self._update(op, collection)
            return self._delete(op, collection)
        except Exception as exc:
            log.warning(
                "reconcile-op-failed action=%s error=%s",
                op.action,
                error_message(exc),
                extra={"uid": op.uid, "destination": str(self.destination)},
            )
            return ItemError(message=error_message(exc), uid=op.uid, collection=collection.name)

    def _create(self, op: _Create, collection: Collection) -> ItemRef:
        ext_id = self.remote.create_item(
            collection.external_id, self.to_fields(op.item, op.fingerprint)
        )
        self.store.create_record(
            SyncedRecord(
                owner_id=self.owner_id,
                destination=self.destination,
                stable_key=op.stable_key,
                external_id=ext_id,
                collection_id=collection.external_id,
                fingerprint=op.fingerprint,
                course_code=op.item.course_code,
                title=op.item.title,
                start=op.item.start,
            )
        )
        return self._ref(op, collection, ext_id)

    def _update(self, op: _Update, collection: Collection) -> ItemRef:
        self.remote.update_item(
            op.record.collection_id,
            op.record.external_id,
            self.to_fields(op.item, op.fingerprint),
        )
        self.store.update_record(
            self.owner_id,
            self.destination,
            op.stable_key,
            fingerprint=op.fingerprint,
            course_code=op.item.course_code,
            title=op.item.title,
            start=op.item.start,
        )
        return self._ref(op, collection, op.record.external_id)

    def _delete(self, op: _Delete, collection: Collection) -> ItemRef:
        self.remote.delete_item(op.record.collection_id, op.record.external_id)
        # The key may already point at a new item in another collection
        self.store.delete_record(
            self.owner_id, self.destination, op.stable_key, op.record.external_id
        )
        return self._ref(op, collection, op.record.external_id)

    # -------------
    # Helpers
    # -------------

    @staticmethod
    def _ref(op: _Op, collection: Collection, external_id: str | None) -> ItemRef:
        return ItemRef(
            uid=op.uid,
            title=op.title,
            external_id=external_id,
            collection=collection.name,
            reason=op.reason,
        )

    @staticmethod
    def _bucket(outcome: Outcome, action: str) -> list[ItemRef]:
        if action == _CREATE:
            return outcome.created
        if action == _UPDATE:
            return outcome.updated
        return outcome.deleted
