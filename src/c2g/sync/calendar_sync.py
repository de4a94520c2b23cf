"""Calendar destination pass (Canvas events → one Google calendar).

The owner's calendar is the collection registered under the configured
calendar name; it is created once through `create_calendar` (CLI
`c2g create-calendar`). Without it the pass raises CollectionMissing
internally, fails as a whole with "No calendar found" and touches nothing.

Records are scoped to that calendar: rows pointing at another calendar id
(e.g. a calendar that was recreated) are not reconciled here.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Sequence

from ..errors import CollectionMissing, error_message
from ..mapping.events import event_stable_key, item_to_event
from ..models import Collection, Destination, SourceItem
from .engine import ReconcileEngine
from .ports import RecordStore, RemoteApi
from .report import Outcome

__all__ = ["NO_CALENDAR_MESSAGE", "CalendarSync"]

log = logging.getLogger(__name__)

NO_CALENDAR_MESSAGE = "No calendar found"


class CalendarSync:
    def __init__(
        self,
        store: RecordStore,
        remote: RemoteApi,
        *,
        owner_id: str,
        calendar_name: str,
        max_workers: int = 4,
        cancel: threading.Event | None = None,
        dry_run: bool = False,
    ) -> None:
        self.store = store
        self.remote = remote
        self.owner_id = owner_id
        self.calendar_name = calendar_name
        self.engine = ReconcileEngine(
            store,
            remote,
            owner_id=owner_id,
            destination=Destination.CALENDAR,
            to_fields=item_to_event,
            key_of=event_stable_key,
            max_workers=max_workers,
            cancel=cancel,
            dry_run=dry_run,
        )

    def run(self, items: Sequence[SourceItem], removed_courses: Iterable[str] = ()) -> Outcome:
        """Reconcile the owner's calendar against `items`."""
        try:
            collection = self._calendar()
            existing = [
                rec
                for rec in self.store.find_existing(self.owner_id, Destination.CALENDAR)
                if rec.collection_id == collection.external_id
            ]
        except CollectionMissing as exc:
            log.error("calendar-missing", extra={"calendar": self.calendar_name})
            return Outcome.failed(error_message(exc))
        except Exception as exc:
            log.exception("calendar-pass-fatal")
            return Outcome.failed(error_message(exc))

        return self.engine.reconcile(
            items, existing, collection=collection, removed_courses=removed_courses
        )

    def _calendar(self) -> Collection:
        collection = self.store.find_collection(
            self.owner_id, Destination.CALENDAR, self.calendar_name
        )
        if collection is None:
            raise CollectionMissing(NO_CALENDAR_MESSAGE)
        return collection

    def create_calendar(self, name: str | None = None) -> tuple[Collection, bool]:
        """Register the owner's calendar, creating it remotely when needed.

        A Google calendar with the same summary is adopted instead of duplicated.
        Returns (collection, created).
        """
        cal_name = (name or self.calendar_name).strip()
        if not cal_name:
            raise ValueError("Calendar name must not be empty")
        known = self.store.find_collection(self.owner_id, Destination.CALENDAR, cal_name)
        if known is not None:
            return known, False

        remote_id = self.remote.find_collection(cal_name)
        if remote_id is not None:
            log.info("calendar-adopted", extra={"calendar": cal_name})
            adopted = self.store.create_collection(
                self.owner_id, Destination.CALENDAR, cal_name, remote_id, created_by_engine=False
            )
            return adopted, False

        ext_id = self.remote.create_collection(cal_name)
        created = self.store.create_collection(
            self.owner_id, Destination.CALENDAR, cal_name, ext_id
        )
        return created, True

    def reset(self) -> Outcome:
        """Delete every engine-created calendar item of the owner.

        Besides the stored records, the registered calendar is listed remotely
        so keyed events the store no longer knows about are removed too.
        """
        try:
            existing = self.store.find_existing(self.owner_id, Destination.CALENDAR)
            collection = self.store.find_collection(
                self.owner_id, Destination.CALENDAR, self.calendar_name
            )
            if collection is not None:
                existing += self.engine.untracked_records(collection, existing)
        except Exception as exc:
            log.exception("calendar-reset-fatal")
            return Outcome.failed(error_message(exc))
        if collection is None:
            # Deletes address each record's own calendar id; this only names the report entry
            collection = Collection(
                owner_id=self.owner_id,
                destination=Destination.CALENDAR,
                name=self.calendar_name,
                external_id="",
            )
        return self.engine.reconcile([], existing, collection=collection)
