"""Wires the store, remote client, offline queue and entity syncers together."""

import logging
from typing import Any, Dict, Iterable, Optional

from protech.auth import SessionProvider
from protech.config import Settings
from protech.errors import SyncError, SyncInProgressError
from protech.logging_config import log_queue, log_sync
from protech.protocols import RemoteDataClient
from protech.remote import RemoteClient
from protech.storage import SQLiteStore
from protech.types import CloudSyncStatus, SyncResult, format_datetime, parse_datetime, utc_now

from .queue import OfflineQueue
from .syncers import PARENTS, SYNCER_CLASSES

logger = logging.getLogger(__name__)

# Parents before children so dependencies are uploaded first
SYNC_ORDER = [
    "employee",
    "customer",
    "inventory",
    "ticket",
    "appointment",
    "time_clock",
    "payment",
    "loyalty_member",
]

LAST_SYNC_KEY = "last_sync_time"


class SyncCoordinator:
    """One shop's sync stack.

    Owns one syncer per entity type (registered with the offline queue) and
    runs whole-shop passes in dependency order.
    """

    def __init__(
        self,
        store: SQLiteStore,
        remote: RemoteDataClient,
        session: SessionProvider,
        settings: Optional[Settings] = None,
        *,
        now_fn=None,
    ):
        self.settings = settings or Settings()
        self.store = store
        self.remote = remote
        self.session = session
        self._now = now_fn or utc_now
        self.queue = OfflineQueue.from_settings(store, remote, self.settings, now_fn=now_fn)

        self.syncers: Dict[str, Any] = {}
        for entity_type in SYNC_ORDER:
            parent_type = PARENTS.get(entity_type)
            syncer = SYNCER_CLASSES[entity_type](
                store,
                remote,
                session,
                self.queue,
                parent=self.syncers.get(parent_type) if parent_type else None,
                batch_size=self.settings.batch_size,
                poll_interval=self.settings.poll_interval,
            )
            self.syncers[entity_type] = syncer
            self.queue.register(entity_type, syncer)

    @classmethod
    def from_settings(cls, settings: Settings, transport=None, now_fn=None) -> "SyncCoordinator":
        """Build the stack from resolved settings.

        Raises:
            ValueError: no shop or no backend configured.
        """
        if not settings.shop_id:
            raise ValueError("No shop configured. Set PROTECH_SHOP_ID or pass --shop.")
        if not settings.has_backend:
            raise ValueError(
                "No backend configured. Set PROTECH_BACKEND_URL and PROTECH_API_KEY "
                "or add them to credentials.json."
            )
        store = SQLiteStore(settings.shop_id, settings.resolved_db_path(), now_fn=now_fn)
        remote = RemoteClient.from_settings(settings, transport=transport)
        return cls(store, remote, SessionProvider.from_settings(settings), settings, now_fn=now_fn)

    @property
    def shop_id(self) -> str:
        return self.store.shop_id

    def syncer(self, entity_type: str):
        try:
            return self.syncers[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type}") from None

    @property
    def customers(self):
        return self.syncers["customer"]

    @property
    def tickets(self):
        return self.syncers["ticket"]

    @property
    def inventory(self):
        return self.syncers["inventory"]

    @property
    def employees(self):
        return self.syncers["employee"]

    @property
    def appointments(self):
        return self.syncers["appointment"]

    @property
    def time_clock(self):
        return self.syncers["time_clock"]

    @property
    def payments(self):
        return self.syncers["payment"]

    @property
    def loyalty_members(self):
        return self.syncers["loyalty_member"]

    def _selected(self, entity_types: Optional[Iterable[str]]):
        if entity_types is None:
            return [self.syncers[e] for e in SYNC_ORDER]
        wanted = set(entity_types)
        for entity_type in wanted:
            self.syncer(entity_type)
        return [self.syncers[e] for e in SYNC_ORDER if e in wanted]

    # === Passes ===

    def process_queue(self) -> SyncResult:
        result = self.queue.process_pending_queue()
        status = self.queue.status()
        log_queue(self.shop_id, result.pushed + result.pulled, status["pending"], status["failed"])
        return result

    def push(self, entity_types: Optional[Iterable[str]] = None) -> SyncResult:
        """Upload pending records for the selected entity types."""
        result = SyncResult()
        for syncer in self._selected(entity_types):
            if not syncer.can_write():
                continue
            try:
                batch = syncer.upload_pending_changes()
            except SyncInProgressError as e:
                result.errors.append(str(e))
                continue
            result.pushed += len(batch.uploaded)
            result.queued += len(batch.queued)
            result.failed += len(batch.failed)
            result.errors.extend(f"{syncer.entity_type}/{rid}: {err}" for rid, err in batch.failed.items())
        log_sync(self.shop_id, "push", result.pushed, len(result.errors))
        return result

    def pull(self, entity_types: Optional[Iterable[str]] = None) -> SyncResult:
        """Download remote changes for the selected entity types."""
        result = SyncResult()
        for syncer in self._selected(entity_types):
            try:
                result.merge(syncer.download())
            except SyncError as e:
                logger.warning(f"Download of {syncer.entity_type} failed: {e}")
                result.errors.append(f"{syncer.entity_type}: {e}")
        log_sync(self.shop_id, "pull", result.pulled, len(result.errors))
        return result

    def perform_full_sync(self, entity_types: Optional[Iterable[str]] = None) -> SyncResult:
        """Drain the queue, then upload and download every entity type in dependency order."""
        result = SyncResult()
        if not self.queue.is_online:
            logger.info("Offline - full sync skipped, changes stay queued")
            result.errors.append("Offline - cannot reach remote")
            return result

        result.merge(self.process_queue())
        for syncer in self._selected(entity_types):
            try:
                result.merge(syncer.sync())
            except SyncError as e:
                logger.warning(f"Sync of {syncer.entity_type} failed: {e}")
                result.errors.append(f"{syncer.entity_type}: {e}")

        if result.success or result.pushed or result.pulled:
            self.store.set_meta(LAST_SYNC_KEY, format_datetime(self._now()))
        log_sync(self.shop_id, "full", result.pushed + result.pulled, len(result.errors))
        logger.info(
            f"Full sync: pushed={result.pushed}, pulled={result.pulled}, queued={result.queued}, "
            f"conflicts={result.conflict_count}, errors={len(result.errors)}"
        )
        return result

    def purge_tombstones(self, older_than_days: Optional[int] = None) -> int:
        days = self.settings.tombstone_retention_days if older_than_days is None else older_than_days
        return sum(self.store.purge_tombstones(e, days) for e in SYNC_ORDER)

    # === Realtime ===

    def start_realtime(self, entity_types: Optional[Iterable[str]] = None) -> None:
        for syncer in self._selected(entity_types):
            syncer.start_realtime()

    def stop_realtime(self) -> None:
        for syncer in self.syncers.values():
            syncer.stop_realtime()

    # === Status ===

    def last_sync_time(self):
        value = self.store.get_meta(LAST_SYNC_KEY)
        return parse_datetime(value) if value else None

    def status(self) -> Dict[str, Any]:
        entities = {}
        for entity_type in SYNC_ORDER:
            entities[entity_type] = {
                "total": self.store.count(entity_type),
                "pending": self.store.count(entity_type, CloudSyncStatus.PENDING),
                "failed": self.store.count(entity_type, CloudSyncStatus.FAILED),
                "realtime": self.syncers[entity_type].realtime_active,
            }
        return {
            "shop_id": self.shop_id,
            "role": self.session.current_role,
            "last_sync": format_datetime(self.last_sync_time()),
            "queue": self.queue.status(),
            "entities": entities,
        }

    def close(self) -> None:
        self.stop_realtime()
        close = getattr(self.remote, "close", None)
        if close is not None:
            close()
