"""Narrow interfaces the sync layer depends on.

`c2g.state.State` implements RecordStore and PolicyStore; the Google clients
implement RemoteApi. Tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from ..config import Policy
from ..models import Collection, Destination, SyncedRecord

__all__ = ["PolicyStore", "RecordStore", "RemoteApi"]


class RecordStore(Protocol):
    def find_existing(self, owner_id: str, destination: Destination) -> list[SyncedRecord]: ...

    def create_record(self, record: SyncedRecord) -> None: ...

    def update_record(
        self, owner_id: str, destination: Destination, stable_key: str, **fields: Any
    ) -> None: ...

    def delete_record(
        self,
        owner_id: str,
        destination: Destination,
        stable_key: str,
        external_id: str | None = None,
    ) -> None: ...

    def find_collection(
        self, owner_id: str, destination: Destination, name: str
    ) -> Collection | None: ...

    def create_collection(
        self,
        owner_id: str,
        destination: Destination,
        name: str,
        external_id: str,
        *,
        created_by_engine: bool = True,
    ) -> Collection: ...

    def list_collections(self, owner_id: str, destination: Destination) -> list[Collection]: ...


class RemoteApi(Protocol):
    def create_item(self, collection_id: str, fields: Mapping[str, Any]) -> str: ...

    def update_item(
        self, collection_id: str, external_id: str, fields: Mapping[str, Any]
    ) -> None: ...

    def delete_item(self, collection_id: str, external_id: str) -> None: ...

    def list_items(self, collection_id: str) -> list[dict[str, Any]]: ...

    def find_collection(self, name: str) -> str | None: ...

    def create_collection(self, name: str) -> str: ...


class PolicyStore(Protocol):
    def get_current_policy(self, owner_id: str) -> Policy | None: ...

    def get_last_applied_policy(self, owner_id: str) -> Policy | None: ...

    def set_last_applied_policy(self, owner_id: str, policy: Policy) -> None: ...

    def set_current_policy(self, owner_id: str, policy: Policy) -> None: ...
