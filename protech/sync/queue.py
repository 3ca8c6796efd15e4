"""Durable offline operation queue.

Operations that could not reach the remote are stored in the ``sync_queue``
table of the local store and replayed in FIFO order once connectivity
returns. There is at most one pending operation per record: a newer intent
replaces the queued one in place (a delete always wins over an upload), so
enqueueing is idempotent.

Failure handling:

- connectivity errors consume a retry, schedule the next attempt with
  exponential backoff and stop the current drain; after ``max_retries``
  retries the operation is marked failed
- any other error marks the operation (and its record) failed immediately
- failed operations stay visible until ``requeue_failed`` or ``clear_queue``
"""

import json
import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from protech.config import (
    DEFAULT_CONNECTIVITY_TTL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    Settings,
)
from protech.errors import ConnectivityError, SyncError
from protech.protocols import RemoteDataClient
from protech.storage import SQLiteStore
from protech.storage.schema import table_for
from protech.types import (
    CloudSyncStatus,
    OperationStatus,
    OperationType,
    SyncOperation,
    SyncResult,
    format_datetime,
    parse_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)

ALL_RECORDS = "*"
MAX_ERROR_LENGTH = 500


class OfflineQueue:
    """FIFO queue of deferred sync operations for one shop.

    Args:
        store: The shop's SQLiteStore; the queue lives in the same database.
        remote: Remote client, checked by ``is_online``. None means always offline.
        max_retries: Connectivity retries before an operation is marked failed.
        base_delay: Backoff after the first failure, in seconds (doubles each retry).
        max_delay: Backoff ceiling in seconds.
        connectivity_ttl: Seconds a connectivity check result is cached.
    """

    def __init__(
        self,
        store: SQLiteStore,
        remote: Optional[RemoteDataClient] = None,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        max_delay: float = DEFAULT_RETRY_MAX_DELAY,
        connectivity_ttl: float = DEFAULT_CONNECTIVITY_TTL,
        now_fn=None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.store = store
        self.remote = remote
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.connectivity_ttl = connectivity_ttl
        self._now = now_fn or utc_now
        self._handlers: Dict[str, Any] = {}
        self._drain_lock = threading.Lock()
        self._online: Optional[bool] = None
        self._last_connectivity_check = None

    @classmethod
    def from_settings(cls, store, remote, settings: Settings, now_fn=None) -> "OfflineQueue":
        return cls(
            store,
            remote,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            connectivity_ttl=settings.connectivity_ttl,
            now_fn=now_fn,
        )

    @property
    def shop_id(self) -> str:
        return self.store.shop_id

    def register(self, entity_type: str, handler) -> None:
        """Register the syncer that replays operations for ``entity_type``."""
        table_for(entity_type)
        self._handlers[entity_type] = handler

    # === Enqueue ===

    def enqueue(
        self,
        operation: OperationType,
        entity_type: str,
        entity_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Queue an operation and return its id.

        If the record already has a pending operation it is updated in place
        (same id, same FIFO position) and its retry state is reset.
        """
        operation = OperationType(operation)
        table_for(entity_type)
        if entity_id is None:
            if operation != OperationType.DOWNLOAD:
                raise ValueError(f"{operation.value} operations need an entity_id")
            entity_id = ALL_RECORDS

        now = format_datetime(self._now())
        payload_json = json.dumps(payload) if payload is not None else None

        with self.store._connect() as conn:
            conn.execute(
                """INSERT INTO sync_queue
                   (shop_id, operation, entity_type, entity_id, status, enqueued_at, payload)
                   VALUES (?, ?, ?, ?, 'pending', ?, ?)
                   ON CONFLICT(shop_id, entity_type, entity_id) WHERE status = 'pending'
                   DO UPDATE SET
                       operation = CASE
                           WHEN sync_queue.operation = 'delete' THEN 'delete'
                           ELSE excluded.operation END,
                       payload = CASE
                           WHEN sync_queue.operation = 'delete' THEN sync_queue.payload
                           ELSE excluded.payload END,
                       retry_count = 0,
                       last_error = NULL,
                       next_attempt_at = NULL,
                       revision = sync_queue.revision + 1""",
                (self.shop_id, operation.value, entity_type, entity_id, now, payload_json),
            )
            row = conn.execute(
                """SELECT id FROM sync_queue
                   WHERE shop_id = ? AND entity_type = ? AND entity_id = ? AND status = 'pending'""",
                (self.shop_id, entity_type, entity_id),
            ).fetchone()
        logger.debug(f"Queued {operation.value} for {entity_type}/{entity_id} (op {row['id']})")
        return row["id"]

    # === Inspection ===

    def _row_to_operation(self, row) -> SyncOperation:
        return SyncOperation(
            id=row["id"],
            operation=OperationType(row["operation"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            status=OperationStatus(row["status"]),
            retry_count=row["retry_count"],
            last_error=row["last_error"],
            enqueued_at=parse_datetime(row["enqueued_at"]),
            last_attempt_at=parse_datetime(row["last_attempt_at"]),
            next_attempt_at=parse_datetime(row["next_attempt_at"]),
            revision=row["revision"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
        )

    def _operations(self, status: OperationStatus, limit: Optional[int] = None) -> List[SyncOperation]:
        query = "SELECT * FROM sync_queue WHERE shop_id = ? AND status = ? ORDER BY id"
        params: List[Any] = [self.shop_id, status.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self.store._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_operation(row) for row in rows]

    def pending_operations(self, limit: Optional[int] = None) -> List[SyncOperation]:
        """Pending operations in FIFO order."""
        return self._operations(OperationStatus.PENDING, limit)

    def failed_operations(self) -> List[SyncOperation]:
        return self._operations(OperationStatus.FAILED)

    def get_operation(self, operation_id: int) -> Optional[SyncOperation]:
        with self.store._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_queue WHERE id = ? AND shop_id = ?",
                (operation_id, self.shop_id),
            ).fetchone()
        return self._row_to_operation(row) if row else None

    def pending_count(self) -> int:
        with self.store._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM sync_queue WHERE shop_id = ? AND status = 'pending'",
                (self.shop_id,),
            ).fetchone()[0]

    def status(self) -> Dict[str, Any]:
        """Queue summary: online flag, pending/failed counts and breakdowns."""
        with self.store._connect() as conn:
            counts = {
                row["status"]: row["n"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS n FROM sync_queue WHERE shop_id = ? GROUP BY status",
                    (self.shop_id,),
                ).fetchall()
            }
            by_entity = {
                row["entity_type"]: row["n"]
                for row in conn.execute(
                    """SELECT entity_type, COUNT(*) AS n FROM sync_queue
                       WHERE shop_id = ? AND status = 'pending' GROUP BY entity_type""",
                    (self.shop_id,),
                ).fetchall()
            }
            by_operation = {
                row["operation"]: row["n"]
                for row in conn.execute(
                    """SELECT operation, COUNT(*) AS n FROM sync_queue
                       WHERE shop_id = ? AND status = 'pending' GROUP BY operation""",
                    (self.shop_id,),
                ).fetchall()
            }
        return {
            "online": self.is_online,
            "pending": counts.get(OperationStatus.PENDING.value, 0),
            "failed": counts.get(OperationStatus.FAILED.value, 0),
            "by_entity": by_entity,
            "by_operation": by_operation,
        }

    # === Maintenance ===

    def clear_queue(self, include_failed: bool = False) -> int:
        """Discard queued operations without applying them. Returns the number removed."""
        query = "DELETE FROM sync_queue WHERE shop_id = ?"
        if not include_failed:
            query += " AND status = 'pending'"
        with self.store._connect() as conn:
            count = conn.execute(query, (self.shop_id,)).rowcount
        if count:
            logger.info(f"Cleared {count} queued operations")
        return count

    def requeue_failed(self, operation_ids: Optional[Sequence[int]] = None) -> int:
        """Move failed operations back to pending with a fresh retry budget.

        A failed operation whose record already has a newer pending operation
        is dropped instead.
        """
        failed = [
            op
            for op in self.failed_operations()
            if operation_ids is None or op.id in set(operation_ids)
        ]
        requeued = 0
        with self.store._connect() as conn:
            for op in failed:
                superseded = conn.execute(
                    """SELECT 1 FROM sync_queue
                       WHERE shop_id = ? AND entity_type = ? AND entity_id = ? AND status = 'pending'""",
                    (self.shop_id, op.entity_type, op.entity_id),
                ).fetchone()
                if superseded:
                    conn.execute("DELETE FROM sync_queue WHERE id = ?", (op.id,))
                    continue
                conn.execute(
                    """UPDATE sync_queue
                       SET status = 'pending', retry_count = 0, last_error = NULL,
                           next_attempt_at = NULL
                       WHERE id = ?""",
                    (op.id,),
                )
                requeued += 1
        if requeued:
            logger.info(f"Requeued {requeued} failed operations")
        return requeued

    # === Connectivity ===

    @property
    def is_online(self) -> bool:
        """Whether the remote is reachable. Results are cached for ``connectivity_ttl``."""
        if self.remote is None:
            return False

        now = self._now()
        if self._last_connectivity_check is not None and self._online is not None:
            elapsed = (now - self._last_connectivity_check).total_seconds()
            if elapsed < self.connectivity_ttl:
                return self._online

        try:
            self._online = bool(self.remote.health_check())
        except SyncError as e:
            logger.debug(f"Connectivity check failed: {e}")
            self._online = False
        self._last_connectivity_check = now
        return self._online

    def set_online(self, online: bool) -> Optional[SyncResult]:
        """Record a connectivity change. Coming back online drains the queue."""
        was_online = self._online
        self._online = online
        self._last_connectivity_check = self._now()
        if online and was_online is not True:
            logger.info("Connectivity restored, processing queued operations")
            return self.process_pending_queue()
        return None

    # === Processing ===

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds to wait before attempt ``retry_count + 1``."""
        if retry_count < 1:
            return 0.0
        return min(self.base_delay * (2 ** (retry_count - 1)), self.max_delay)

    def process_pending_queue(self) -> SyncResult:
        """Replay eligible pending operations in FIFO order.

        Operations waiting out a backoff block later operations of the same
        entity type. Only one drain runs at a time; a concurrent call returns
        an empty result.
        """
        result = SyncResult()
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("Queue drain already running")
            return result
        try:
            if not self.is_online:
                logger.info("Offline - queue drain skipped")
                result.errors.append("Offline - cannot reach remote")
                return result
            self._drain(result)
        finally:
            self._drain_lock.release()

        logger.info(
            f"Queue drain: pushed={result.pushed}, pulled={result.pulled}, "
            f"failed={result.failed}, remaining={self.pending_count()}"
        )
        return result

    def _drain(self, result: SyncResult) -> None:
        now = self._now()
        blocked = set()
        for op in self.pending_operations():
            if op.entity_type in blocked:
                continue
            if op.next_attempt_at is not None and op.next_attempt_at > now:
                blocked.add(op.entity_type)
                continue

            handler = self._handlers.get(op.entity_type)
            try:
                if handler is None:
                    raise SyncError(f"No syncer registered for {op.entity_type}")
                outcome = handler.replay(op)
            except ConnectivityError as e:
                self._record_retry(op, str(e), result)
                self._online = False
                self._last_connectivity_check = self._now()
                logger.info(f"Remote unreachable, stopping queue drain: {e}")
                return
            except SyncError as e:
                self._record_failure(op, str(e), result)
                continue
            except Exception as e:
                logger.exception(f"Unexpected error replaying {op.operation.value} {op.entity_type}/{op.entity_id}")
                self._record_failure(op, f"{type(e).__name__}: {e}", result)
                continue

            self._complete(op)
            result.merge(outcome)

    def _complete(self, op: SyncOperation) -> None:
        """Remove a finished operation unless it was replaced while in flight."""
        with self.store._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_queue WHERE id = ? AND revision = ?", (op.id, op.revision)
            )
            if cursor.rowcount == 0:
                logger.debug(f"Op {op.id} was replaced during replay; keeping the newer intent")
                return
            conn.execute(
                """DELETE FROM sync_queue
                   WHERE shop_id = ? AND entity_type = ? AND entity_id = ? AND status = 'failed'""",
                (self.shop_id, op.entity_type, op.entity_id),
            )

    def _record_retry(self, op: SyncOperation, error: str, result: SyncResult) -> None:
        retry_count = op.retry_count + 1
        if retry_count > self.max_retries:
            logger.warning(
                f"{op.entity_type}/{op.entity_id} exceeded {self.max_retries} retries, marking failed"
            )
            self._record_failure(op, error, result, retry_count=retry_count)
            return

        now = self._now()
        next_attempt = now + timedelta(seconds=self.backoff_delay(retry_count))
        with self.store._connect() as conn:
            conn.execute(
                """UPDATE sync_queue
                   SET retry_count = ?, last_error = ?, last_attempt_at = ?, next_attempt_at = ?
                   WHERE id = ? AND revision = ?""",
                (
                    retry_count,
                    error[:MAX_ERROR_LENGTH],
                    format_datetime(now),
                    format_datetime(next_attempt),
                    op.id,
                    op.revision,
                ),
            )
        result.errors.append(
            f"{op.operation.value} {op.entity_type}/{op.entity_id}: {error} "
            f"(retry {retry_count}/{self.max_retries})"
        )

    def _record_failure(
        self,
        op: SyncOperation,
        error: str,
        result: SyncResult,
        retry_count: Optional[int] = None,
    ) -> None:
        """Mark an operation (and its record) failed. Does not consume a retry unless given one.

        An operation replaced by a newer intent while it was running is left
        pending for the next drain.
        """
        with self.store._connect() as conn:
            cursor = conn.execute(
                """UPDATE sync_queue
                   SET status = 'failed', retry_count = ?, last_error = ?, last_attempt_at = ?
                   WHERE id = ? AND revision = ?""",
                (
                    op.retry_count if retry_count is None else retry_count,
                    error[:MAX_ERROR_LENGTH],
                    format_datetime(self._now()),
                    op.id,
                    op.revision,
                ),
            )
            if cursor.rowcount == 0:
                logger.debug(f"Op {op.id} was replaced during replay; not marking it failed")
                return
            # older failures for the same record are superseded
            conn.execute(
                """DELETE FROM sync_queue
                   WHERE shop_id = ? AND entity_type = ? AND entity_id = ?
                     AND status = 'failed' AND id != ?""",
                (self.shop_id, op.entity_type, op.entity_id, op.id),
            )
        if op.entity_id != ALL_RECORDS:
            self.store.mark_status(op.entity_type, [op.entity_id], CloudSyncStatus.FAILED)
        result.failed += 1
        result.errors.append(f"{op.operation.value} {op.entity_type}/{op.entity_id}: {error}")
        logger.warning(f"Queued {op.operation.value} for {op.entity_type}/{op.entity_id} failed: {error}")
