"""Bulk migration of the local dataset to the remote.

The service walks the shop's records phase by phase (employees, customers,
inventory, tickets), uploads them through the entity syncers and verifies
the remote row counts afterwards. Local tombstones are uploaded as well, so
remote rows of deleted records end up soft-deleted. Progress is exposed
through read-only properties and ``snapshot()`` so a UI or the CLI can poll it.

A connectivity failure pauses the run instead of failing it: nothing is
marked failed, a checkpoint is stored, and running ``start_migration`` again
with ``skip_existing`` picks up where it stopped. ``rollback_migration`` only
resets local sync state; remote rows are never deleted.
"""

import json
import logging
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Sequence

from protech.errors import (
    ConnectivityError,
    MigrationServiceError,
    SyncError,
    ValidationError,
    error_kind,
)
from protech.logging_config import log_migration
from protech.types import SyncRecord, format_datetime, utc_now

from .models import (
    ENTITY_LABELS,
    ENTITY_PHASES,
    MigrationError,
    MigrationOptions,
    MigrationPhase,
    MigrationReport,
    MigrationStatistics,
)

logger = logging.getLogger(__name__)

REPORT_KEY = "last_migration_report"
CHECKPOINT_KEY = "migration_checkpoint"


class _Paused(Exception):
    """Internal: stop the run and keep it resumable."""


class _Failed(Exception):
    """Internal: stop the run in the failed phase."""


class DataMigrationService:
    """Migrates one shop's local records to the remote.

    Args:
        store: The shop's local store.
        remote: Remote client (used for the reachability check and verification).
        session: Session provider.
        syncers: Entity syncers keyed by entity type; uploads go through them.
    """

    def __init__(self, store, remote, session, syncers: Dict[str, Any], *, now_fn=None):
        self.store = store
        self.remote = remote
        self.session = session
        self.syncers = syncers
        self._now = now_fn or utc_now

        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._is_migrating = False
        self._phase = MigrationPhase.IDLE
        self._status_message = "Ready"
        self._statistics = MigrationStatistics()
        self._errors: List[MigrationError] = []
        self._paused_phase: Optional[MigrationPhase] = None
        self._backup_path: Optional[str] = None
        self._options = MigrationOptions()

    @classmethod
    def from_coordinator(cls, coordinator, now_fn=None) -> "DataMigrationService":
        return cls(
            coordinator.store,
            coordinator.remote,
            coordinator.session,
            coordinator.syncers,
            now_fn=now_fn,
        )

    # === Observables ===

    @property
    def is_migrating(self) -> bool:
        return self._is_migrating

    @property
    def current_phase(self) -> MigrationPhase:
        return self._phase

    @property
    def status_message(self) -> str:
        return self._status_message

    @property
    def statistics(self) -> MigrationStatistics:
        return self._statistics

    @property
    def errors(self) -> List[MigrationError]:
        with self._state_lock:
            return list(self._errors)

    @property
    def paused_phase(self) -> Optional[MigrationPhase]:
        return self._paused_phase

    @property
    def progress(self) -> float:
        """Records done (migrated or skipped) over all records considered, in [0, 1]."""
        if self._phase == MigrationPhase.COMPLETED:
            return 1.0
        stats = self._statistics
        if stats.total <= 0:
            return 0.0
        return min(1.0, (stats.migrated + stats.skipped) / stats.total)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "is_migrating": self._is_migrating,
            "phase": self._phase.value,
            "paused_phase": self._paused_phase.value if self._paused_phase else None,
            "progress": round(self.progress, 4),
            "status_message": self._status_message,
            "statistics": self._statistics.to_dict(),
            "error_count": len(self._errors),
        }

    def cancel(self) -> None:
        """Stop after the current record or chunk. The run stays resumable."""
        if self._is_migrating:
            logger.info("Migration cancel requested")
            self._cancel.set()

    # === Internal state helpers ===

    def _set_phase(self, phase: MigrationPhase, message: str) -> None:
        self._phase = phase
        self._status_message = message
        logger.info(f"Migration phase {phase.value}: {message}")

    def _add_error(
        self,
        message: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        kind: str = "unknown",
    ) -> None:
        error = MigrationError(
            timestamp=self._now(),
            phase=self._phase,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            kind=kind,
        )
        with self._state_lock:
            self._errors.append(error)

    def _report(self) -> MigrationReport:
        return MigrationReport(
            phase=self._phase,
            statistics=self._statistics,
            errors=self.errors,
            options=self._options,
            paused_phase=self._paused_phase,
            cancelled=self._cancel.is_set(),
            backup_path=self._backup_path,
        )

    def _save_report(self) -> MigrationReport:
        report = self._report()
        self.store.set_meta(REPORT_KEY, report.to_json())
        return report

    def _checkpoint(self) -> Optional[Dict[str, Any]]:
        raw = self.store.get_meta(CHECKPOINT_KEY)
        return json.loads(raw) if raw else None

    # === Commands ===

    def start_migration(self, options: Optional[MigrationOptions] = None) -> MigrationReport:
        """Run (or resume) a migration and return its report.

        Raises:
            MigrationServiceError: a migration is already running.
        """
        if not self._run_lock.acquire(blocking=False):
            raise MigrationServiceError("A migration is already in progress")
        try:
            self._is_migrating = True
            return self._run(options or MigrationOptions())
        finally:
            self._is_migrating = False
            self._run_lock.release()

    def _run(self, options: MigrationOptions) -> MigrationReport:
        self._options = options
        self._cancel.clear()
        self._statistics = MigrationStatistics(started_at=self._now())
        self._paused_phase = None
        self._backup_path = None

        checkpoint = self._checkpoint()
        if checkpoint:
            logger.info(f"Resuming migration paused during {checkpoint.get('phase')}")

        try:
            self._prepare(options)
            plan = self._validate(options)
            for entity_type, phase in ENTITY_PHASES:
                if entity_type in plan:
                    self._migrate_entity(entity_type, phase, plan[entity_type], options)
            self._verify(plan)
        except _Paused:
            self._statistics.finished_at = self._now()
            self.store.set_meta(
                CHECKPOINT_KEY,
                json.dumps(
                    {"phase": self._paused_phase.value, "paused_at": format_datetime(self._now())}
                ),
            )
            log_migration(
                self.store.shop_id,
                f"paused:{self._paused_phase.value}",
                self._statistics.migrated,
                self._statistics.failed,
            )
            return self._save_report()
        except _Failed as e:
            self._statistics.finished_at = self._now()
            self._set_phase(MigrationPhase.FAILED, str(e))
            log_migration(
                self.store.shop_id,
                MigrationPhase.FAILED.value,
                self._statistics.migrated,
                self._statistics.failed,
            )
            return self._save_report()

        self._statistics.finished_at = self._now()
        self.store.delete_meta(CHECKPOINT_KEY)
        stats = self._statistics
        self._set_phase(
            MigrationPhase.COMPLETED,
            f"Migration complete: {stats.migrated} migrated, {stats.skipped} skipped, "
            f"{stats.failed} failed",
        )
        log_migration(self.store.shop_id, MigrationPhase.COMPLETED.value, stats.migrated, stats.failed)
        return self._save_report()

    def _pause(self, message: str, kind: str = "connectivity") -> None:
        self._paused_phase = self._phase
        self._add_error(message, kind=kind)
        self._status_message = f"Paused during {self._phase.value}: {message}"
        logger.warning(self._status_message)
        raise _Paused(message)

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            self._paused_phase = self._phase
            self._status_message = f"Cancelled during {self._phase.value}"
            logger.info(self._status_message)
            raise _Paused("cancelled")

    def _prepare(self, options: MigrationOptions) -> None:
        self._set_phase(MigrationPhase.PREPARING, "Checking session and connectivity")
        try:
            self.session.require_session()
        except SyncError as e:
            self._add_error(str(e), kind=error_kind(e))
            raise _Failed(f"Cannot migrate: {e}")

        try:
            reachable = self.remote.health_check()
        except ConnectivityError:
            reachable = False
        if not reachable:
            self._pause("Remote is unreachable")

        if options.create_backup:
            try:
                self._backup_path = str(self.store.backup())
            except (OSError, sqlite3.Error) as e:
                self._add_error(f"Backup failed: {e}")
                raise _Failed(f"Local backup failed: {e}")

    def _validate(self, options: MigrationOptions) -> Dict[str, List[SyncRecord]]:
        """Count and validate records. Returns the records to upload per entity type."""
        self._set_phase(MigrationPhase.VALIDATING, "Validating local records")
        plan: Dict[str, List[SyncRecord]] = {}
        found_any = False

        for entity_type, _ in ENTITY_PHASES:
            if not options.includes(entity_type):
                continue
            syncer = self.syncers[entity_type]
            records = self.store.fetch(entity_type, include_deleted=True)
            stats = self._statistics.for_entity(entity_type)
            stats.total = len(records)
            found_any = found_any or bool(records)

            eligible = []
            for record in records:
                if options.skip_existing and record.is_synced:
                    stats.skipped += 1
                    continue
                if record.is_deleted:
                    # tombstones only need their deleted_at propagated
                    stats.tombstones += 1
                    eligible.append(record)
                    continue
                try:
                    syncer.validate(record)
                except ValidationError as e:
                    stats.failed += 1
                    self._add_error(
                        str(e), entity_type=entity_type, entity_id=record.id, kind=e.kind
                    )
                    if not options.continue_on_error:
                        raise _Failed(f"Invalid {entity_type} {record.id}: {e}")
                    continue
                eligible.append(record)
            plan[entity_type] = eligible

        if not found_any:
            self._add_error("No data found to migrate", kind="validation")
            raise _Failed("No data found to migrate")

        self._status_message = (
            f"{self._statistics.eligible} records to migrate, "
            f"{self._statistics.skipped} already synced"
        )
        return plan

    def _migrate_entity(
        self,
        entity_type: str,
        phase: MigrationPhase,
        records: Sequence[SyncRecord],
        options: MigrationOptions,
    ) -> None:
        label = ENTITY_LABELS[entity_type]
        syncer = self.syncers[entity_type]
        stats = self._statistics.for_entity(entity_type)
        self._set_phase(phase, f"Migrating {len(records)} {label}")

        live = [r for r in records if not r.is_deleted]
        if options.use_batch_operations:
            chunks = [
                live[i : i + syncer.batch_size] for i in range(0, len(live), syncer.batch_size)
            ]
        else:
            chunks = [[record] for record in live]
        # push() routes tombstones through the soft-delete path, one at a time
        chunks.extend([record] for record in records if record.is_deleted)

        for chunk in chunks:
            self._check_cancelled()
            try:
                if len(chunk) == 1:
                    syncer.push(chunk[0])
                else:
                    syncer.push_many(chunk)
                stats.migrated += len(chunk)
            except ConnectivityError as e:
                self._pause(str(e))
            except SyncError as e:
                if len(chunk) == 1:
                    self._record_failure(entity_type, chunk[0], e, options)
                else:
                    logger.info(f"Chunk of {len(chunk)} {label} failed ({e}); retrying singly")
                    self._push_singly(entity_type, chunk, options)
            self._status_message = f"Migrating {label}: {stats.migrated}/{stats.eligible}"

        log_migration(self.store.shop_id, phase.value, stats.migrated, stats.failed)

    def _push_singly(self, entity_type: str, records: Sequence[SyncRecord], options) -> None:
        syncer = self.syncers[entity_type]
        stats = self._statistics.for_entity(entity_type)
        for record in records:
            try:
                syncer.push(record)
                stats.migrated += 1
            except ConnectivityError as e:
                self._pause(str(e))
            except SyncError as e:
                self._record_failure(entity_type, record, e, options)

    def _record_failure(
        self, entity_type: str, record: SyncRecord, error: SyncError, options: MigrationOptions
    ) -> None:
        self._statistics.for_entity(entity_type).failed += 1
        self._add_error(str(error), entity_type=entity_type, entity_id=record.id, kind=error.kind)
        logger.warning(f"Failed to migrate {entity_type}/{record.id}: {error}")
        if not options.continue_on_error:
            raise _Failed(f"Failed to migrate {entity_type} {record.id}: {error}")

    def _verify(self, plan: Dict[str, List[SyncRecord]]) -> None:
        """Compare remote row counts with what is synced locally. Mismatches are not fatal."""
        self._set_phase(MigrationPhase.VERIFYING, "Verifying remote record counts")
        for entity_type in plan:
            syncer = self.syncers[entity_type]
            records = self.store.fetch(entity_type, include_deleted=True)
            live_synced = len([r for r in records if r.is_synced and not r.is_deleted])
            all_synced = len([r for r in records if r.is_synced])
            try:
                remote_live = self.remote.count(
                    syncer.remote_table, {"shop_id": self.store.shop_id, "deleted_at": None}
                )
                remote_all = self.remote.count(syncer.remote_table, {"shop_id": self.store.shop_id})
            except SyncError as e:
                self._add_error(
                    f"Could not verify {entity_type}: {e}", entity_type=entity_type, kind=e.kind
                )
                continue
            label = ENTITY_LABELS[entity_type]
            if remote_live < live_synced:
                message = f"Remote has {remote_live} live {label}, expected at least {live_synced}"
            elif remote_all < all_synced:
                message = (
                    f"Remote has {remote_all} {label} including deleted, "
                    f"expected at least {all_synced}"
                )
            else:
                continue
            self._add_error(message, entity_type=entity_type, kind="verification")

    # === Report / rollback ===

    def last_report(self) -> Optional[MigrationReport]:
        raw = self.store.get_meta(REPORT_KEY)
        return MigrationReport.from_json(raw) if raw else None

    def rollback_migration(self) -> int:
        """Mark every local record pending again. Remote data is left untouched.

        Returns:
            Number of records reset.
        """
        if self._is_migrating:
            raise MigrationServiceError("Cannot roll back while a migration is running")
        count = self.store.reset_sync_status()
        self.store.delete_meta(CHECKPOINT_KEY)
        self._paused_phase = None
        self._statistics = MigrationStatistics()
        self._set_phase(MigrationPhase.IDLE, f"Rolled back: {count} records marked pending")
        log_migration(self.store.shop_id, "rollback", 0, 0)
        return count

    def clear_errors(self) -> int:
        """Clear the error list here and in the stored report. Returns errors removed."""
        with self._state_lock:
            count = len(self._errors)
            self._errors.clear()
        report = self.last_report()
        if report is not None and report.errors:
            count = max(count, len(report.errors))
            report.errors = []
            self.store.set_meta(REPORT_KEY, report.to_json())
        return count
