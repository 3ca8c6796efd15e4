"""
protech Protocol Definitions
============================

Interface contracts between the sync components.

- LocalStore:        the on-device repository (the only mutation path for records)
- RemoteDataClient:  the tenant-scoped remote table API and its change feed
- Subscription:      a live change-feed handle with explicit stop

Error handling:
- Remote clients raise ConnectivityError for unreachable/timeout/5xx,
  PermissionDeniedError for auth/RLS rejections and ValidationError for
  rejected payloads.
- Stores raise ConflictError when a save would lower a sync_version and
  PermissionDeniedError for a record from another shop.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

from protech.types import CloudSyncStatus, SyncConflict, SyncRecord

# A change-feed event: ("insert" | "update" | "delete", row)
ChangeHandler = Callable[[str, Dict[str, Any]], None]


@runtime_checkable
class Subscription(Protocol):
    @property
    def active(self) -> bool: ...

    def stop(self) -> None:
        """Stop delivering events. Safe to call more than once."""
        ...


@runtime_checkable
class RemoteDataClient(Protocol):
    def upsert(self, table: str, rows: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Insert or update rows keyed by ``id``."""
        ...

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        since_column: str = "updated_at",
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def delete(self, table: str, filters: Dict[str, Any]) -> int: ...

    def soft_delete(
        self,
        table: str,
        record_id: str,
        deleted_at: datetime,
        *,
        sync_version: Optional[int] = None,
    ) -> int: ...

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int: ...

    def health_check(self) -> bool: ...

    def subscribe(
        self,
        table: str,
        filters: Dict[str, Any],
        on_event: ChangeHandler,
        *,
        interval: Optional[float] = None,
    ) -> Subscription: ...


@runtime_checkable
class LocalStore(Protocol):
    shop_id: str

    def save(self, record: SyncRecord, *, local_edit: bool = True) -> str: ...

    def save_batch(self, records: Iterable[SyncRecord], *, local_edit: bool = True) -> List[str]: ...

    def get(
        self, entity_type: str, record_id: str, *, include_deleted: bool = True
    ) -> Optional[SyncRecord]: ...

    def fetch(
        self,
        entity_type: str,
        where: Optional[Dict[str, Any]] = None,
        *,
        include_deleted: bool = False,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SyncRecord]: ...

    def delete(self, record: SyncRecord) -> bool: ...

    def mark_synced(self, entity_type: str, record_id: str, sync_version: int) -> bool: ...

    def mark_status(
        self, entity_type: str, record_ids: Sequence[str], status: CloudSyncStatus
    ) -> int: ...

    def count(
        self,
        entity_type: str,
        status: Optional[CloudSyncStatus] = None,
        *,
        include_deleted: bool = True,
    ) -> int: ...

    def get_meta(self, key: str) -> Optional[str]: ...

    def set_meta(self, key: str, value: str) -> None: ...

    def save_sync_conflict(self, conflict: SyncConflict) -> str: ...

    def backup(self, destination: Optional[Path] = None) -> Path: ...
