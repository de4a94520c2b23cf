"""Tasks destination pass (Canvas assignments → Google task lists).

Grouping
- per_course:   one task list per course code; items without a code go to
                "Uncategorized"
- consolidated: every item goes to one list named by the policy

Per group the list is looked up in the store, then on Google by title
(adopted when found), and created otherwise. Failing to resolve one group's
list is an error scoped to that group; the other groups still sync.

Known lists that receive no group this run are reconciled against an empty
item set, so items of courses that were dropped (or whose items vanished)
are removed too. Records pointing at a list the store no longer knows are
swept the same way.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Iterable, Sequence

from ..config import TasksPolicy
from ..errors import error_message
from ..mapping.tasks import item_to_task, task_stable_key
from ..models import Collection, Destination, SourceItem, SyncedRecord
from .engine import CANCELLED_MESSAGE, ReconcileEngine
from .ports import RecordStore, RemoteApi
from .report import CollectionRef, ItemError, TaskOutcome

__all__ = ["UNCATEGORIZED", "CollectionRouter"]

log = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"


class CollectionRouter:
    def __init__(
        self,
        store: RecordStore,
        remote: RemoteApi,
        *,
        owner_id: str,
        policy: TasksPolicy,
        max_workers: int = 4,
        cancel: threading.Event | None = None,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.remote = remote
        self.owner_id = owner_id
        self.policy = policy
        self.cancel = cancel or threading.Event()
        self.dry_run = dry_run
        self.engine = ReconcileEngine(
            store,
            remote,
            owner_id=owner_id,
            destination=Destination.TASKS,
            to_fields=item_to_task,
            key_of=task_stable_key,
            max_workers=max_workers,
            cancel=self.cancel,
            dry_run=dry_run,
        )

    def group_name(self, item: SourceItem) -> str:
        if self.policy.grouping == "consolidated":
            return self.policy.consolidated_list_name
        return item.course_code or UNCATEGORIZED

    def group(self, items: Iterable[SourceItem]) -> dict[str, list[SourceItem]]:
        groups: dict[str, list[SourceItem]] = {}
        for item in items:
            groups.setdefault(self.group_name(item), []).append(item)
        return groups

    def route(
        self, items: Sequence[SourceItem], removed_courses: Iterable[str] = ()
    ) -> TaskOutcome:
        removed = tuple(removed_courses)
        try:
            existing = self.store.find_existing(self.owner_id, Destination.TASKS)
            known = self.store.list_collections(self.owner_id, Destination.TASKS)
        except Exception as exc:
            log.exception("tasks-pass-fatal")
            return TaskOutcome.failed(error_message(exc))

        by_collection: dict[str, list[SyncedRecord]] = defaultdict(list)
        for rec in existing:
            by_collection[rec.collection_id].append(rec)

        outcome = TaskOutcome()
        routed: set[str] = set()
        for name, group_items in self.group(items).items():
            if self.cancel.is_set():
                outcome.errors.extend(
                    ItemError(message=CANCELLED_MESSAGE, uid=item.uid, collection=name)
                    for item in group_items
                )
                continue
            try:
                collection, created = self._resolve(name)
            except Exception as exc:
                log.warning(
                    "tasklist-resolve-failed error=%s",
                    error_message(exc),
                    extra={"collection": name},
                )
                outcome.errors.append(ItemError(message=error_message(exc), collection=name))
                continue

            ref = CollectionRef(name=collection.name, external_id=collection.external_id)
            (outcome.collections_created if created else outcome.collections_existing).append(ref)
            routed.add(collection.external_id)
            outcome.extend(
                self.engine.reconcile(
                    group_items,
                    by_collection.pop(collection.external_id, []),
                    collection=collection,
                    removed_courses=removed,
                )
            )

        # Lists without incoming items this run
        known_by_id = {c.external_id: c for c in known}
        for collection_id, records in by_collection.items():
            if collection_id in routed:
                continue
            collection = known_by_id.get(collection_id) or self._placeholder(
                collection_id, collection_id
            )
            outcome.extend(
                self.engine.reconcile([], records, collection=collection, removed_courses=removed)
            )
        return outcome

    def _resolve(self, name: str) -> tuple[Collection, bool]:
        """Return (collection, created) for a group name."""
        known = self.store.find_collection(self.owner_id, Destination.TASKS, name)
        if known is not None:
            return known, False

        remote_id = self.remote.find_collection(name)
        if remote_id is not None:
            log.info("tasklist-adopted", extra={"collection": name})
            if self.dry_run:
                return self._placeholder(name, remote_id), False
            adopted = self.store.create_collection(
                self.owner_id, Destination.TASKS, name, remote_id, created_by_engine=False
            )
            return adopted, False

        if self.dry_run:
            return self._placeholder(name, ""), True
        ext_id = self.remote.create_collection(name)
        return self.store.create_collection(self.owner_id, Destination.TASKS, name, ext_id), True

    def _placeholder(self, name: str, external_id: str) -> Collection:
        return Collection(
            owner_id=self.owner_id,
            destination=Destination.TASKS,
            name=name,
            external_id=external_id,
        )

    def reset(self) -> TaskOutcome:
        """Delete every engine-created task of the owner, list by list.

        Registered lists are also listed remotely so keyed tasks the store no
        longer knows about are removed too.
        """
        try:
            existing = self.store.find_existing(self.owner_id, Destination.TASKS)
            collections = self.store.list_collections(self.owner_id, Destination.TASKS)
        except Exception as exc:
            log.exception("tasks-reset-fatal")
            return TaskOutcome.failed(error_message(exc))

        by_collection: dict[str, list[SyncedRecord]] = defaultdict(list)
        for rec in existing:
            by_collection[rec.collection_id].append(rec)
        known = {c.external_id: c for c in collections}
        outcome = TaskOutcome()
        for collection_id in dict.fromkeys([*by_collection, *known]):
            records = by_collection.get(collection_id, [])
            collection = known.get(collection_id) or self._placeholder(
                collection_id, collection_id
            )
            if collection_id in known:
                try:
                    records = records + self.engine.untracked_records(collection, records)
                except Exception as exc:
                    log.warning(
                        "tasklist-list-failed error=%s",
                        error_message(exc),
                        extra={"collection": collection.name},
                    )
                    outcome.errors.append(
                        ItemError(message=error_message(exc), collection=collection.name)
                    )
            outcome.extend(self.engine.reconcile([], records, collection=collection))
        return outcome
