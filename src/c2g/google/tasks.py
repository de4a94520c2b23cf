"""Google Tasks API client (destination for assignment items).

Task lists are the collections; one per course or a single consolidated
list, depending on the tasks grouping policy.

Notes
- Deleting a task that is already gone (404/410) counts as success.
- Updates are PATCHes so a task the user has completed stays completed.

Refs:
- https://developers.google.com/tasks/reference/rest/v1/tasklists
- https://developers.google.com/tasks/reference/rest/v1/tasks
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from googleapiclient.errors import HttpError

from ..mapping.tasks import task_stable_key
from .service import ThreadLocalService, is_gone, raise_for_auth

__all__ = ["TasksClient"]

logger = logging.getLogger(__name__)


class TasksClient:
    def __init__(self, credentials: Any, *, page_size: int = 100) -> None:
        self._svc = ThreadLocalService("tasks", "v1", credentials)
        # Tasks API caps maxResults at 100
        self.page_size = min(page_size, 100)

    # -------------
    # Task lists
    # -------------

    def list_collections(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            try:
                resp = (
                    self._svc.get()
                    .tasklists()
                    .list(pageToken=page_token, maxResults=self.page_size)
                    .execute()
                )
            except HttpError as he:
                raise_for_auth(he)
                raise
            out.extend(tl for tl in resp.get("items", []) or [] if tl.get("id"))
            page_token = resp.get("nextPageToken")
            if not page_token:
                return out

    def find_collection(self, name: str) -> str | None:
        for tl in self.list_collections():
            if tl.get("title") == name:
                return str(tl["id"])
        return None

    def create_collection(self, name: str) -> str:
        try:
            created = self._svc.get().tasklists().insert(body={"title": name.strip()}).execute()
        except HttpError as he:
            raise_for_auth(he)
            raise
        list_id = created.get("id")
        if not list_id:
            raise RuntimeError("Google did not return a task list id")
        logger.info("tasklist-created", extra={"collection": name})
        return str(list_id)

    # -------------
    # Tasks
    # -------------

    def create_item(self, collection_id: str, fields: Mapping[str, Any]) -> str:
        created = (
            self._svc.get().tasks().insert(tasklist=collection_id, body=dict(fields)).execute()
        )
        task_id = created.get("id")
        if not task_id:
            raise RuntimeError("Google did not return a task id")
        return str(task_id)

    def update_item(self, collection_id: str, external_id: str, fields: Mapping[str, Any]) -> None:
        self._svc.get().tasks().patch(
            tasklist=collection_id, task=external_id, body=dict(fields)
        ).execute()

    def delete_item(self, collection_id: str, external_id: str) -> None:
        try:
            self._svc.get().tasks().delete(tasklist=collection_id, task=external_id).execute()
        except HttpError as he:
            if is_gone(he):
                logger.debug("task-already-deleted", extra={"task_id": external_id})
                return
            raise

    def list_items(self, collection_id: str) -> list[dict[str, Any]]:
        """All tasks in the list carrying a c2g key marker."""
        out: list[dict[str, Any]] = []
        page_token: str | None = None
        while True:
            try:
                resp = (
                    self._svc.get()
                    .tasks()
                    .list(
                        tasklist=collection_id,
                        pageToken=page_token,
                        maxResults=self.page_size,
                        showCompleted=True,
                        showHidden=True,
                    )
                    .execute()
                )
            except HttpError as he:
                raise_for_auth(he)
                raise
            out.extend(
                t for t in resp.get("items", []) or [] if t.get("id") and task_stable_key(t)
            )
            page_token = resp.get("nextPageToken")
            if not page_token:
                return out
