"""Google Calendar API client (destination for calendar items).

Features
- Create / patch / delete single events in one calendar
- Create a secondary calendar and look one up by its summary
- List events written by c2g (those carrying the private stable key)

Notes
- Deleting an event that is already gone (404/410) counts as success: the end
  state is the one requested.
- 401/403 on lookups surface as AuthorizationError so the calendar pass can
  fail as a whole; item-level calls propagate HttpError to the engine, which
  records it against the item.

Refs:
- https://developers.google.com/calendar/api/v3/reference/events
- https://developers.google.com/calendar/api/v3/reference/calendars/insert
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from googleapiclient.errors import HttpError

from ..mapping.events import event_stable_key
from .service import ThreadLocalService, is_gone, raise_for_auth

__all__ = ["CalendarClient"]

logger = logging.getLogger(__name__)


class CalendarClient:
    def __init__(self, credentials: Any, *, page_size: int = 250) -> None:
        self._svc = ThreadLocalService("calendar", "v3", credentials)
        self.page_size = page_size

    # -------------
    # Calendars
    # -------------

    def find_collection(self, name: str) -> str | None:
        """Return the id of the first calendar in the user's list whose summary is `name`."""
        page_token: str | None = None
        while True:
            try:
                resp = (
                    self._svc.get()
                    .calendarList()
                    .list(pageToken=page_token, maxResults=self.page_size)
                    .execute()
                )
            except HttpError as he:
                raise_for_auth(he)
                raise
            for cal in resp.get("items", []) or []:
                if cal.get("summary") == name and cal.get("id"):
                    return str(cal["id"])
            page_token = resp.get("nextPageToken")
            if not page_token:
                return None

    def create_collection(self, name: str) -> str:
        try:
            created = self._svc.get().calendars().insert(body={"summary": name.strip()}).execute()
        except HttpError as he:
            raise_for_auth(he)
            raise
        cal_id = created.get("id")
        if not cal_id:
            raise RuntimeError("Google did not return a calendar id")
        logger.info("calendar-created", extra={"calendar": name})
        return str(cal_id)

    # -------------
    # Events
    # -------------

    def create_item(self, collection_id: str, fields: Mapping[str, Any]) -> str:
        created = (
            self._svc.get().events().insert(calendarId=collection_id, body=dict(fields)).execute()
        )
        ev_id = created.get("id")
        if not ev_id:
            raise RuntimeError("Google did not return an event id")
        return str(ev_id)

    def update_item(self, collection_id: str, external_id: str, fields: Mapping[str, Any]) -> None:
        self._svc.get().events().patch(
            calendarId=collection_id, eventId=external_id, body=dict(fields)
        ).execute()

    def delete_item(self, collection_id: str, external_id: str) -> None:
        try:
            self._svc.get().events().delete(
                calendarId=collection_id, eventId=external_id
            ).execute()
        except HttpError as he:
            if is_gone(he):
                logger.debug("event-already-deleted", extra={"event_id": external_id})
                return
            raise

    def list_items(self, collection_id: str) -> list[dict[str, Any]]:
        """All events in the calendar carrying a c2g stable key."""
        out: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            try:
                resp = (
                    self._svc.get()
                    .events()
                    .list(
                        calendarId=collection_id,
                        pageToken=page_token,
                        maxResults=self.page_size,
                        showDeleted=False,
                    )
                    .execute()
                )
            except HttpError as he:
                raise_for_auth(he)
                raise
            for ev in resp.get("items", []) or []:
                if ev.get("id") and event_stable_key(ev):
                    out.append(ev)
            page_token = resp.get("nextPageToken")
            if not page_token:
                return out
