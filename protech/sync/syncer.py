"""Generic entity syncer.

One instance per entity type reconciles that type between the local store
and the remote tables:

- ``push``/``push_many`` write to the remote and raise on any failure
- ``upload``/``batch_upload``/``delete`` wrap those and turn connectivity
  failures into queued operations
- ``download``/``merge_or_create`` pull remote rows and apply them by
  sync_version (strictly newer remote wins, equal is a no-op, older is
  discarded and recorded as a conflict)
- ``start_realtime``/``stop_realtime`` manage a change-feed subscription

Passes for one entity type never overlap: ``upload``, ``batch_upload``,
``download`` and ``upload_pending_changes`` raise SyncInProgressError if
another thread is already running one. ``push`` and merges wait their turn.
"""

import contextlib
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from protech.auth import SessionProvider
from protech.config import DEFAULT_BATCH_SIZE
from protech.errors import (
    ConnectivityError,
    PermissionDeniedError,
    SyncError,
    SyncInProgressError,
    ValidationError,
)
from protech.protocols import LocalStore, RemoteDataClient
from protech.types import (
    BatchUploadResult,
    CloudSyncStatus,
    MergeOutcome,
    OperationType,
    SyncConflict,
    SyncOperation,
    SyncOutcome,
    SyncRecord,
    SyncResult,
    format_datetime,
    parse_datetime,
    utc_now,
)

from .mappers import mapping_for

logger = logging.getLogger(__name__)

WATERMARK_KEY = "watermark:{entity_type}"


class EntitySyncer:
    """Bidirectional sync for one entity type.

    Subclasses set ``entity_type`` and, where records reference a parent,
    ``parent_field``. ``required_roles`` restricts who may write.

    Args:
        store: Local store (the only mutation path for records).
        remote: Remote data client.
        session: Session provider for tenant and role checks.
        queue: Offline queue that receives operations deferred by
            connectivity failures. Without one, connectivity errors propagate.
        parent: Syncer for the parent entity, uploaded first when unsynced.
        batch_size: Records per remote request in batch uploads.
        continue_on_error: Default for ``batch_upload``.
        poll_interval: Change-feed poll interval (None uses the client default).
    """

    entity_type: str = ""
    parent_field: Optional[str] = None
    required_roles: Optional[frozenset] = None

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteDataClient,
        session: SessionProvider,
        queue=None,
        *,
        parent: Optional["EntitySyncer"] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        continue_on_error: bool = True,
        poll_interval: Optional[float] = None,
    ):
        if not self.entity_type:
            raise TypeError("EntitySyncer subclasses must set entity_type")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.remote = remote
        self.session = session
        self.queue = queue
        self.parent = parent
        self.batch_size = batch_size
        self.continue_on_error = continue_on_error
        self.poll_interval = poll_interval
        self.mapping = mapping_for(self.entity_type)
        self._lock = threading.RLock()
        self._subscription = None

    @property
    def remote_table(self) -> str:
        return self.mapping.remote_table

    # === Guards ===

    @contextlib.contextmanager
    def _exclusive(self, action: str):
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError(
                f"A {self.entity_type} sync pass is already running; {action} rejected",
                entity_type=self.entity_type,
            )
        try:
            yield
        finally:
            self._lock.release()

    def check_access(self, record: SyncRecord) -> None:
        """Tenant and role checks. Runs before any network call."""
        self.session.require_shop(record.shop_id)
        if self.required_roles:
            self.session.require_role(self.required_roles)

    def can_write(self) -> bool:
        return not self.required_roles or self.session.current_role in self.required_roles

    def validate(self, record: SyncRecord) -> None:
        self.mapping.validate(record)

    def _mark_failed(self, records: Sequence[SyncRecord]) -> None:
        ids = [r.id for r in records if r.id and r.shop_id == self.store.shop_id]
        if ids:
            self.store.mark_status(self.entity_type, ids, CloudSyncStatus.FAILED)

    def _enqueue(self, record: SyncRecord) -> None:
        operation = OperationType.DELETE if record.is_deleted else OperationType.UPLOAD
        self.queue.enqueue(operation, self.entity_type, record.id)

    # === Push (raises) ===

    def _ensure_parent_synced(self, record: SyncRecord) -> None:
        """Upload an unsynced parent first. One hop only."""
        if not self.parent_field or self.parent is None:
            return
        parent_id = getattr(record, self.parent_field, None)
        if not parent_id:
            return
        parent = self.store.get(self.parent.entity_type, parent_id)
        if parent is None:
            logger.debug(
                f"{self.entity_type}/{record.id} references {self.parent.entity_type}/{parent_id} "
                f"which is not stored locally"
            )
            return
        if parent.cloud_sync_status != CloudSyncStatus.SYNCED:
            logger.info(
                f"Uploading {self.parent.entity_type}/{parent_id} before {self.entity_type}/{record.id}"
            )
            self.parent.push(parent, include_parent=False)

    def push(self, record: SyncRecord, *, include_parent: bool = True) -> bool:
        """Upsert one record remotely and mark it synced.

        Returns False if the record was edited locally while in flight (it
        stays pending for the next push).

        Raises:
            PermissionDeniedError, ValidationError, ConnectivityError, UnknownSyncError
        """
        self.check_access(record)
        if record.is_deleted:
            return self._push_tombstone(record)
        self.validate(record)
        with self._lock:
            if include_parent:
                self._ensure_parent_synced(record)
            self.remote.upsert(self.remote_table, [self.mapping.to_remote(record)])
            synced = self.store.mark_synced(self.entity_type, record.id, record.sync_version)
        if synced:
            record.cloud_sync_status = CloudSyncStatus.SYNCED
        logger.debug(f"Pushed {self.entity_type}/{record.id} v{record.sync_version}")
        return synced

    def push_many(self, records: Sequence[SyncRecord]) -> List[str]:
        """Upsert a chunk in one request. Returns ids that ended up synced.

        Every record is checked and validated before the request is sent, so
        a bad record fails the chunk without any network call.
        """
        if not records:
            return []
        for record in records:
            self.check_access(record)
            if not record.is_deleted:
                self.validate(record)
        with self._lock:
            for record in records:
                self._ensure_parent_synced(record)
            self.remote.upsert(
                self.remote_table, [self.mapping.to_remote(record) for record in records]
            )
            synced = []
            for record in records:
                if self.store.mark_synced(self.entity_type, record.id, record.sync_version):
                    record.cloud_sync_status = CloudSyncStatus.SYNCED
                    synced.append(record.id)
        logger.debug(f"Pushed {len(records)} {self.entity_type} records in one request")
        return synced

    def _push_tombstone(self, record: SyncRecord) -> bool:
        """Soft-delete the remote row, or upload the tombstone if there is none yet."""
        with self._lock:
            patched = self.remote.soft_delete(
                self.remote_table,
                record.id,
                record.deleted_at or utc_now(),
                sync_version=record.sync_version,
            )
            if not patched:
                logger.debug(
                    f"{self.entity_type}/{record.id} was deleted before its first upload; "
                    f"uploading the tombstone"
                )
                self._ensure_parent_synced(record)
                self.remote.upsert(self.remote_table, [self.mapping.to_remote(record)])
            synced = self.store.mark_synced(self.entity_type, record.id, record.sync_version)
        if synced:
            record.cloud_sync_status = CloudSyncStatus.SYNCED
        logger.debug(f"Pushed tombstone for {self.entity_type}/{record.id}")
        return synced

    def push_delete(self, record_id: str) -> bool:
        """Propagate a local tombstone. A record purged since is a no-op."""
        record = self.store.get(self.entity_type, record_id)
        if record is None:
            return True
        return self.push(record)

    # === Upload (defers connectivity failures) ===

    def upload(self, record: SyncRecord) -> SyncOutcome:
        """Push one record; queue it if the remote is unreachable.

        Raises:
            PermissionDeniedError: wrong tenant, role or RLS rejection (record marked failed).
            ValidationError: malformed record (record marked failed).
        """
        with self._exclusive("upload"):
            return self._upload(record)

    def _upload(self, record: SyncRecord) -> SyncOutcome:
        try:
            self.push(record)
            return SyncOutcome.SYNCED
        except ConnectivityError as e:
            if self.queue is None:
                raise
            self._enqueue(record)
            logger.info(f"Remote unreachable, queued {self.entity_type}/{record.id}: {e}")
            return SyncOutcome.QUEUED
        except (PermissionDeniedError, ValidationError) as e:
            logger.warning(f"Upload of {self.entity_type}/{record.id} rejected: {e}")
            self._mark_failed([record])
            raise

    def delete(self, record: SyncRecord) -> SyncOutcome:
        """Tombstone locally, then propagate (or queue) the delete."""
        self.check_access(record)
        with self._exclusive("delete"):
            if not self.store.delete(record):
                logger.debug(f"{self.entity_type}/{record.id} already deleted or missing")
                stored = self.store.get(self.entity_type, record.id)
                if stored is None or stored.is_synced:
                    return SyncOutcome.SYNCED
                record = stored
            return self._upload(record)

    def batch_upload(
        self, records: Sequence[SyncRecord], continue_on_error: Optional[bool] = None
    ) -> BatchUploadResult:
        """Upload records in chunks of ``batch_size``.

        With ``continue_on_error`` a failed chunk does not stop later chunks.
        Without it the batch stops at the first failure: chunks already sent
        stay synced and the remaining records are queued.
        """
        if continue_on_error is None:
            continue_on_error = self.continue_on_error
        with self._exclusive("batch upload"):
            return self._batch_upload(list(records), continue_on_error)

    def _batch_upload(self, records: List[SyncRecord], continue_on_error: bool) -> BatchUploadResult:
        result = BatchUploadResult()
        valid: List[SyncRecord] = []
        for record in records:
            try:
                self.check_access(record)
                if not record.is_deleted:
                    self.validate(record)
            except (PermissionDeniedError, ValidationError) as e:
                result.failed[record.id] = str(e)
                self._mark_failed([record])
                if not continue_on_error:
                    result.aborted = True
                    break
                continue
            valid.append(record)

        if result.aborted:
            remaining = [r for r in records if r.id not in result.failed]
            self._queue_all(remaining, result)
            return result

        tombstones = [r for r in valid if r.is_deleted]
        live = [r for r in valid if not r.is_deleted]
        chunks = [live[i : i + self.batch_size] for i in range(0, len(live), self.batch_size)]

        for index, chunk in enumerate(chunks):
            result.chunks += 1
            try:
                result.uploaded.extend(self.push_many(chunk))
            except ConnectivityError as e:
                logger.info(f"Chunk {index + 1}/{len(chunks)} of {self.entity_type} deferred: {e}")
                if self.queue is None:
                    raise
                self._queue_all(chunk, result)
                if not continue_on_error:
                    result.aborted = True
                    self._queue_all([r for c in chunks[index + 1 :] for r in c] + tombstones, result)
                    return result
            except SyncError as e:
                logger.warning(f"Chunk {index + 1}/{len(chunks)} of {self.entity_type} failed: {e}")
                for record in chunk:
                    result.failed[record.id] = str(e)
                self._mark_failed(chunk)
                if not continue_on_error:
                    result.aborted = True
                    self._queue_all([r for c in chunks[index + 1 :] for r in c] + tombstones, result)
                    return result

        for record in tombstones:
            try:
                if self._upload(record) == SyncOutcome.SYNCED:
                    result.uploaded.append(record.id)
                else:
                    result.queued.append(record.id)
            except SyncError as e:
                result.failed[record.id] = str(e)
                if not continue_on_error:
                    result.aborted = True
                    break

        logger.info(
            f"Batch upload of {self.entity_type}: {len(result.uploaded)} uploaded, "
            f"{len(result.queued)} queued, {len(result.failed)} failed"
        )
        return result

    def _queue_all(self, records: Sequence[SyncRecord], result: BatchUploadResult) -> None:
        if self.queue is None:
            return
        for record in records:
            self._enqueue(record)
            result.queued.append(record.id)

    def pending_records(self) -> List[SyncRecord]:
        return self.store.fetch(
            self.entity_type,
            {"cloud_sync_status": CloudSyncStatus.PENDING.value},
            include_deleted=True,
        )

    def upload_pending_changes(self) -> BatchUploadResult:
        """Batch-upload every pending record of this type."""
        with self._exclusive("upload of pending changes"):
            return self._batch_upload(self.pending_records(), self.continue_on_error)

    # === Download / merge ===

    @property
    def watermark_key(self) -> str:
        return WATERMARK_KEY.format(entity_type=self.entity_type)

    def get_watermark(self) -> Optional[datetime]:
        value = self.store.get_meta(self.watermark_key)
        return parse_datetime(value) if value else None

    def download(self) -> SyncResult:
        """Pull remote rows changed since the watermark and merge them.

        A connectivity failure queues a download operation and is reported in
        ``errors`` rather than raised.
        """
        with self._exclusive("download"):
            try:
                return self.pull()
            except ConnectivityError as e:
                if self.queue is None:
                    raise
                self.queue.enqueue(OperationType.DOWNLOAD, self.entity_type)
                logger.info(f"Remote unreachable, queued {self.entity_type} download: {e}")
                result = SyncResult(queued=1)
                result.errors.append(str(e))
                return result

    def pull(self) -> SyncResult:
        """Fetch and merge. Raises on connectivity and permission errors."""
        session = self.session.require_session()
        watermark = self.get_watermark()
        rows = self.remote.select(
            self.remote_table,
            {"shop_id": session.shop_id},
            since=watermark,
            order_by="updated_at",
        )
        result = self._merge_rows(rows)

        newest = watermark
        for row in rows:
            try:
                updated_at = parse_datetime(row.get("updated_at"))
            except ValueError:
                continue
            if updated_at and (newest is None or updated_at > newest):
                newest = updated_at
        if newest is not None and newest != watermark:
            self.store.set_meta(self.watermark_key, format_datetime(newest))

        logger.info(
            f"Downloaded {self.entity_type}: {len(rows)} rows, {result.pulled} applied, "
            f"{result.conflict_count} conflicts"
        )
        return result

    def _merge_rows(self, rows: Sequence[Dict[str, Any]]) -> SyncResult:
        result = SyncResult()
        for row in rows:
            try:
                outcome, conflict = self._merge(row)
            except (ValidationError, PermissionDeniedError) as e:
                logger.warning(f"Skipping remote {self.entity_type} row {row.get('id')}: {e}")
                result.errors.append(str(e))
                continue
            if outcome in (MergeOutcome.CREATED, MergeOutcome.UPDATED):
                result.pulled += 1
            if conflict is not None:
                result.conflicts.append(conflict)
        return result

    def download_record(self, record_id: str) -> Optional[MergeOutcome]:
        """Fetch a single record by id and merge it. None if the remote has no such row."""
        session = self.session.require_session()
        rows = self.remote.select(
            self.remote_table, {"id": record_id, "shop_id": session.shop_id}, limit=1
        )
        if not rows:
            return None
        return self.merge_or_create(rows[0])

    def merge_or_create(self, remote_record: Union[Dict[str, Any], SyncRecord]) -> MergeOutcome:
        """Apply one remote record by sync_version."""
        outcome, _ = self._merge(remote_record)
        return outcome

    def _merge(
        self, remote_record: Union[Dict[str, Any], SyncRecord]
    ) -> Tuple[MergeOutcome, Optional[SyncConflict]]:
        if isinstance(remote_record, SyncRecord):
            incoming = remote_record
            incoming.cloud_sync_status = CloudSyncStatus.SYNCED
        else:
            incoming = self.mapping.from_remote(remote_record)

        if incoming.shop_id != self.store.shop_id:
            logger.warning(
                f"Ignoring {self.entity_type}/{incoming.id} from shop {incoming.shop_id}"
            )
            return MergeOutcome.DISCARDED, None

        with self._lock:
            local = self.store.get(self.entity_type, incoming.id)
            if local is None:
                self.store.save(incoming, local_edit=False)
                outcome, conflict = MergeOutcome.CREATED, None
            elif incoming.sync_version > local.sync_version:
                self.store.save(incoming, local_edit=False)
                outcome, conflict = MergeOutcome.UPDATED, None
            elif incoming.sync_version == local.sync_version:
                outcome, conflict = MergeOutcome.UNCHANGED, None
            else:
                conflict = self._record_conflict(local, incoming)
                outcome = MergeOutcome.DISCARDED

        self._after_merge(incoming, outcome)
        return outcome, conflict

    def _record_conflict(self, local: SyncRecord, incoming: SyncRecord) -> SyncConflict:
        conflict = SyncConflict(
            id=str(uuid.uuid4()),
            entity_type=self.entity_type,
            record_id=local.id,
            local_version=local.sync_version,
            remote_version=incoming.sync_version,
            resolution="local_wins",
            resolved_at=utc_now(),
            local_summary=local.summary(),
            remote_summary=incoming.summary(),
        )
        self.store.save_sync_conflict(conflict)
        logger.info(
            f"Discarded remote {self.entity_type}/{local.id} v{incoming.sync_version}; "
            f"local v{local.sync_version} is newer"
        )
        return conflict

    def _after_merge(self, record: SyncRecord, outcome: MergeOutcome) -> None:
        """Hook for subclasses reacting to applied remote changes."""
        pass

    def sync(self) -> SyncResult:
        """Upload pending records, then download remote changes.

        Uploads are skipped when the session role may not write this type.
        """
        result = SyncResult()
        if not self.can_write():
            logger.debug(f"Role {self.session.current_role} is read-only for {self.entity_type}")
            return result.merge(self.download())
        uploaded = self.upload_pending_changes()
        result.pushed += len(uploaded.uploaded)
        result.queued += len(uploaded.queued)
        result.failed += len(uploaded.failed)
        result.errors.extend(f"{rid}: {err}" for rid, err in uploaded.failed.items())
        return result.merge(self.download())

    # === Queue replay ===

    def replay(self, operation: SyncOperation) -> SyncResult:
        """Run a queued operation. Raises so the queue can classify failures."""
        result = SyncResult()
        if operation.operation == OperationType.DOWNLOAD:
            return self.pull()
        if operation.operation == OperationType.DELETE:
            self.push_delete(operation.entity_id)
            result.pushed = 1
            return result

        record = self.store.get(self.entity_type, operation.entity_id)
        if record is None:
            logger.info(f"Queued {self.entity_type}/{operation.entity_id} no longer exists locally")
            return result
        if record.is_synced:
            return result
        self.push(record)
        result.pushed = 1
        return result

    # === Realtime ===

    @property
    def realtime_active(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def start_realtime(self):
        """Subscribe to remote changes for the current shop. Returns the subscription."""
        if self.realtime_active:
            return self._subscription
        session = self.session.require_session()
        self._subscription = self.remote.subscribe(
            self.remote_table,
            {"shop_id": session.shop_id},
            self.handle_change,
            interval=self.poll_interval,
        )
        logger.info(f"Realtime updates started for {self.entity_type}")
        return self._subscription

    def stop_realtime(self) -> None:
        """Stop the change feed. Safe to call when not started."""
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.stop()
            logger.info(f"Realtime updates stopped for {self.entity_type}")

    def handle_change(self, event: str, row: Dict[str, Any]) -> None:
        """Apply one change-feed event.

        A delete event, or a row carrying deleted_at, tombstones the local
        record whatever its sync_version. When the local record is ahead of
        the remote one the tombstone is kept pending so it is pushed at the
        local version. Other events go through the normal version merge.
        """
        if event != "delete" and row.get("deleted_at") is None:
            self.merge_or_create(row)
            return
        if row.get("shop_id") and row.get("shop_id") != self.store.shop_id:
            return

        record_id = str(row.get("id"))
        remote_version = row.get("sync_version")
        local = self.store.get(self.entity_type, record_id)
        if local is None:
            if event != "delete":
                self.merge_or_create(row)
            return
        if local.is_deleted:
            return
        with self._lock:
            if remote_version is not None and local.sync_version > remote_version:
                self.store.delete(local)
            else:
                self.store.apply_remote_delete(
                    self.entity_type,
                    record_id,
                    parse_datetime(row.get("deleted_at")),
                    sync_version=remote_version,
                )
        logger.debug(f"Applied remote delete of {self.entity_type}/{record_id}")
