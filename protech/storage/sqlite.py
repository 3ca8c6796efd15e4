"""
SQLite storage backend for protech.

Local-first storage for shop records with:
- Per-operation connections wrapped in a commit/rollback context manager
- sync_version / cloud_sync_status bookkeeping on every save
- Soft deletes (tombstones) that still participate in sync
- Sync metadata, conflict history and online backups
"""

import contextlib
import hashlib
import json
import logging
import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from protech.config import get_protech_home
from protech.errors import ConflictError, PermissionDeniedError
from protech.types import (
    CloudSyncStatus,
    SyncConflict,
    SyncRecord,
    format_datetime,
    new_id,
    parse_datetime,
    utc_now,
)

from .records import record_to_row, row_to_record
from .schema import ENTITY_TABLES, column_names, init_db, table_for

logger = logging.getLogger(__name__)


class SQLiteStore:
    """SQLite-based local store, scoped to one shop.

    ``save`` is the only way records are written. A local edit stamps
    ``updated_at``, marks the record pending and bumps ``sync_version``; a
    sync write (``local_edit=False``) stores the record as given but never
    lets its version go backwards.
    """

    def __init__(self, shop_id: str, db_path: Optional[Path] = None, now_fn=None):
        if not shop_id or not shop_id.strip():
            raise ValueError("Shop ID cannot be empty")

        self.shop_id = shop_id
        self.db_path = Path(db_path) if db_path else get_protech_home() / "protech.db"
        self._now = now_fn or utc_now

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            init_db(conn, self.db_path)

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Context manager that commits on success, rolls back on error and always closes."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def close(self):
        """Connections are per-operation; nothing to release."""
        pass

    # === Records ===

    def save(self, record: SyncRecord, *, local_edit: bool = True) -> str:
        """Save a record and return its id.

        The record is updated in place with the stored bookkeeping values.

        Raises:
            PermissionDeniedError: record belongs to another shop.
            ConflictError: a sync write would lower the stored sync_version.
        """
        with self._connect() as conn:
            return self._save(conn, record, local_edit)

    def save_batch(self, records: Iterable[SyncRecord], *, local_edit: bool = True) -> List[str]:
        """Save several records in one transaction. Nothing is written if any save fails."""
        with self._connect() as conn:
            return [self._save(conn, record, local_edit) for record in records]

    def _save(self, conn: sqlite3.Connection, record: SyncRecord, local_edit: bool) -> str:
        table = table_for(record.entity_type)
        if not record.shop_id:
            record.shop_id = self.shop_id
        if record.shop_id != self.shop_id:
            raise PermissionDeniedError(
                f"Cannot save record for shop {record.shop_id} in store for shop {self.shop_id}",
                entity_type=record.entity_type,
                record_id=record.id or None,
            )
        if not record.id:
            record.id = new_id()

        existing = conn.execute(
            f"SELECT shop_id, sync_version, created_at FROM {table} WHERE id = ?",
            (record.id,),
        ).fetchone()
        if existing is not None and existing["shop_id"] != self.shop_id:
            raise PermissionDeniedError(
                "Record id already belongs to another shop",
                entity_type=record.entity_type,
                record_id=record.id,
            )

        now = self._now()
        if local_edit:
            record.updated_at = now
            if existing is not None:
                record.sync_version = existing["sync_version"] + 1
                record.created_at = parse_datetime(existing["created_at"])
            else:
                record.sync_version = 1
                record.created_at = record.created_at or now
            record.cloud_sync_status = CloudSyncStatus.PENDING
        else:
            if existing is not None and record.sync_version < existing["sync_version"]:
                raise ConflictError(
                    record.entity_type, record.id, existing["sync_version"], record.sync_version
                )
            record.created_at = record.created_at or now
            record.updated_at = record.updated_at or record.created_at

        row = record_to_row(record)
        columns = list(row.keys())
        conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})",
            [row[c] for c in columns],
        )
        return record.id

    def get(
        self, entity_type: str, record_id: str, *, include_deleted: bool = True
    ) -> Optional[SyncRecord]:
        table = table_for(entity_type)
        query = f"SELECT * FROM {table} WHERE id = ? AND shop_id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            row = conn.execute(query, (record_id, self.shop_id)).fetchone()
        return row_to_record(entity_type, row) if row else None

    def fetch(
        self,
        entity_type: str,
        where: Optional[Dict[str, Any]] = None,
        *,
        include_deleted: bool = False,
        order_by: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SyncRecord]:
        """Fetch records matching an equality predicate.

        Args:
            where: column -> value; None matches NULL, a list/tuple matches any of its values.
            include_deleted: include tombstones (excluded by default).
            order_by: column name, optionally prefixed with "-" for descending.
        """
        table = table_for(entity_type)
        allowed = set(column_names(entity_type))
        clauses = ["shop_id = ?"]
        params: List[Any] = [self.shop_id]

        for column, value in (where or {}).items():
            if column not in allowed:
                raise ValueError(f"Unknown column for {entity_type}: {column}")
            if value is None:
                clauses.append(f"{column} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = [self._param(v) for v in value]
                if not values:
                    return []
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(values)
            else:
                clauses.append(f"{column} = ?")
                params.append(self._param(value))
        if not include_deleted:
            clauses.append("deleted_at IS NULL")

        query = f"SELECT * FROM {table} WHERE {' AND '.join(clauses)}"
        if order_by:
            descending = order_by.startswith("-")
            column = order_by.lstrip("-")
            if column not in allowed:
                raise ValueError(f"Unknown column for {entity_type}: {column}")
            query += f" ORDER BY {column} {'DESC' if descending else 'ASC'}, id ASC"
        else:
            query += " ORDER BY created_at ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [row_to_record(entity_type, row) for row in rows]

    @staticmethod
    def _param(value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, bool):
            return 1 if value else 0
        if isinstance(value, datetime):
            return format_datetime(value)
        return value

    def fetch_by_status(
        self, entity_type: str, statuses: Sequence[CloudSyncStatus], *, include_deleted: bool = True
    ) -> List[SyncRecord]:
        return self.fetch(
            entity_type,
            {"cloud_sync_status": [CloudSyncStatus(s).value for s in statuses]},
            include_deleted=include_deleted,
        )

    def count(
        self,
        entity_type: str,
        status: Optional[CloudSyncStatus] = None,
        *,
        include_deleted: bool = True,
    ) -> int:
        table = table_for(entity_type)
        query = f"SELECT COUNT(*) FROM {table} WHERE shop_id = ?"
        params: List[Any] = [self.shop_id]
        if status is not None:
            query += " AND cloud_sync_status = ?"
            params.append(CloudSyncStatus(status).value)
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._connect() as conn:
            return conn.execute(query, params).fetchone()[0]

    def delete(self, record: SyncRecord) -> bool:
        """Soft delete: mark the record as a tombstone and queue it for sync.

        Returns False when the record does not exist or is already deleted.
        """
        with self._connect() as conn:
            table = table_for(record.entity_type)
            row = conn.execute(
                f"SELECT * FROM {table} WHERE id = ? AND shop_id = ?",
                (record.id, self.shop_id),
            ).fetchone()
            if row is None or row["deleted_at"] is not None:
                return False
            stored = row_to_record(record.entity_type, row)
            now = self._now()
            stored.deleted_at = now
            self._save(conn, stored, local_edit=True)

        record.deleted_at = stored.deleted_at
        record.updated_at = stored.updated_at
        record.sync_version = stored.sync_version
        record.cloud_sync_status = stored.cloud_sync_status
        return True

    def apply_remote_delete(
        self,
        entity_type: str,
        record_id: str,
        deleted_at: Optional[datetime] = None,
        sync_version: Optional[int] = None,
    ) -> bool:
        """Apply a tombstone that arrived from the remote. The local record ends up synced."""
        table = table_for(entity_type)
        deleted_at = deleted_at or self._now()
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT sync_version FROM {table} WHERE id = ? AND shop_id = ?",
                (record_id, self.shop_id),
            ).fetchone()
            if row is None:
                return False
            version = max(row["sync_version"], sync_version or 0)
            conn.execute(
                f"""UPDATE {table}
                    SET deleted_at = COALESCE(deleted_at, ?),
                        updated_at = ?,
                        sync_version = ?,
                        cloud_sync_status = ?
                    WHERE id = ? AND shop_id = ?""",
                (
                    format_datetime(deleted_at),
                    format_datetime(self._now()),
                    version,
                    CloudSyncStatus.SYNCED.value,
                    record_id,
                    self.shop_id,
                ),
            )
        return True

    def mark_synced(self, entity_type: str, record_id: str, sync_version: int) -> bool:
        """Mark a record synced, but only if it is still at the uploaded version.

        A local edit made while the upload was in flight bumps the version, so
        the record stays pending and is picked up by the next push.
        """
        table = table_for(entity_type)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""UPDATE {table} SET cloud_sync_status = ?
                    WHERE id = ? AND shop_id = ? AND sync_version = ?""",
                (CloudSyncStatus.SYNCED.value, record_id, self.shop_id, sync_version),
            )
            return cursor.rowcount > 0

    def mark_status(
        self, entity_type: str, record_ids: Sequence[str], status: CloudSyncStatus
    ) -> int:
        if not record_ids:
            return 0
        table = table_for(entity_type)
        placeholders = ",".join("?" * len(record_ids))
        with self._connect() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET cloud_sync_status = ? "
                f"WHERE shop_id = ? AND id IN ({placeholders})",
                [CloudSyncStatus(status).value, self.shop_id, *record_ids],
            )
            return cursor.rowcount

    def reset_sync_status(
        self,
        entity_types: Optional[Iterable[str]] = None,
        status: CloudSyncStatus = CloudSyncStatus.PENDING,
    ) -> int:
        """Set every record's cloud_sync_status to ``status``. Returns rows changed."""
        total = 0
        with self._connect() as conn:
            for entity_type in entity_types or ENTITY_TABLES.keys():
                table = table_for(entity_type)
                cursor = conn.execute(
                    f"UPDATE {table} SET cloud_sync_status = ? "
                    f"WHERE shop_id = ? AND cloud_sync_status != ?",
                    (CloudSyncStatus(status).value, self.shop_id, CloudSyncStatus(status).value),
                )
                total += cursor.rowcount
        return total

    def purge_tombstones(self, entity_type: str, older_than_days: int) -> int:
        """Hard-delete synced tombstones older than the retention window."""
        table = table_for(entity_type)
        cutoff = format_datetime(self._now() - timedelta(days=older_than_days))
        with self._connect() as conn:
            cursor = conn.execute(
                f"""DELETE FROM {table}
                    WHERE shop_id = ? AND deleted_at IS NOT NULL
                      AND deleted_at < ? AND cloud_sync_status = ?""",
                (self.shop_id, cutoff, CloudSyncStatus.SYNCED.value),
            )
            count = cursor.rowcount
        if count:
            logger.info(f"Purged {count} {entity_type} tombstones older than {older_than_days}d")
        return count

    # === Sync Metadata ===

    def get_meta(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (self._meta_key(key),)
            ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (self._meta_key(key), value, format_datetime(self._now())),
            )

    def delete_meta(self, key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM sync_meta WHERE key = ?", (self._meta_key(key),))
            return cursor.rowcount > 0

    def _meta_key(self, key: str) -> str:
        return f"{self.shop_id}:{key}"

    # === Conflict Management ===

    def save_sync_conflict(self, conflict: SyncConflict) -> str:
        """Save a conflict record. Deduplicates by diff_hash."""
        if not conflict.diff_hash:
            conflict.diff_hash = hashlib.sha256(
                json.dumps(
                    [
                        conflict.entity_type,
                        conflict.record_id,
                        conflict.local_version,
                        conflict.remote_version,
                    ]
                ).encode("utf-8")
            ).hexdigest()

        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM sync_conflicts WHERE diff_hash = ?", (conflict.diff_hash,)
            ).fetchone()
            if existing:
                return existing["id"]
            conn.execute(
                """INSERT INTO sync_conflicts
                   (id, entity_type, record_id, local_version, remote_version,
                    resolution, resolved_at, local_summary, remote_summary, diff_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    conflict.id,
                    conflict.entity_type,
                    conflict.record_id,
                    conflict.local_version,
                    conflict.remote_version,
                    conflict.resolution,
                    format_datetime(conflict.resolved_at),
                    conflict.local_summary,
                    conflict.remote_summary,
                    conflict.diff_hash,
                ),
            )
        return conflict.id

    def get_sync_conflicts(self, limit: int = 100) -> List[SyncConflict]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM sync_conflicts
                   ORDER BY resolved_at DESC
                   LIMIT ?""",
                (limit,),
            ).fetchall()
        return [
            SyncConflict(
                id=row["id"],
                entity_type=row["entity_type"],
                record_id=row["record_id"],
                local_version=row["local_version"],
                remote_version=row["remote_version"],
                resolution=row["resolution"],
                resolved_at=parse_datetime(row["resolved_at"]),
                local_summary=row["local_summary"],
                remote_summary=row["remote_summary"],
                diff_hash=row["diff_hash"],
            )
            for row in rows
        ]

    def clear_sync_conflicts(self, before: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            if before:
                cursor = conn.execute(
                    "DELETE FROM sync_conflicts WHERE resolved_at < ?", (format_datetime(before),)
                )
            else:
                cursor = conn.execute("DELETE FROM sync_conflicts")
            return cursor.rowcount

    # === Backup ===

    def backup(self, destination: Optional[Path] = None) -> Path:
        """Write a consistent copy of the database and return its path."""
        if destination is None:
            stamp = self._now().strftime("%Y%m%d-%H%M%S-%f")
            destination = self.db_path.parent / "backups" / f"protech-{stamp}.db"
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        source = self._get_conn()
        target = sqlite3.connect(destination)
        try:
            source.backup(target)
        finally:
            target.close()
            source.close()
        logger.info(f"Local store backed up to {destination}")
        return destination
