"""Polling change feed.

The backend's push channel is replaced by a background thread that polls a
table for rows updated since the last cursor and emits ``insert``, ``update``
or ``delete`` events. A row with ``deleted_at`` set is reported as a delete.
A row the feed has not delivered since it fell behind the cursor is an insert.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from protech.errors import SyncError
from protech.types import parse_datetime, utc_now

logger = logging.getLogger(__name__)

EVENT_INSERT = "insert"
EVENT_UPDATE = "update"
EVENT_DELETE = "delete"


class PollingSubscription:
    """Live change feed for one table, filtered to the caller's rows.

    ``stop()`` takes effect after the row currently being delivered and may
    be called any number of times.
    """

    def __init__(
        self,
        client,
        table: str,
        filters: Dict[str, Any],
        on_event: Callable[[str, Dict[str, Any]], None],
        *,
        interval: float = 30.0,
        since: Optional[datetime] = None,
        now_fn=None,
    ):
        self._client = client
        self.table = table
        self.filters = dict(filters)
        self._on_event = on_event
        self.interval = interval
        self._now = now_fn or utc_now
        self._cursor: Optional[datetime] = since
        # record id -> ((sync_version, deleted_at), updated_at) of the last delivery
        self._seen: Dict[str, Tuple[Tuple[int, Optional[str]], Optional[datetime]]] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = False

    @property
    def active(self) -> bool:
        return self._started and not self._stop.is_set()

    @property
    def cursor(self) -> Optional[datetime]:
        return self._cursor

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self._cursor is None:
            self._cursor = self._now()
        self._thread = threading.Thread(
            target=self._run, name=f"protech-feed-{self.table}", daemon=True
        )
        self._thread.start()
        logger.debug(f"Change feed started for {self.table}")

    def stop(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        logger.debug(f"Change feed stopped for {self.table}")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except SyncError as e:
                logger.warning(f"Change feed poll for {self.table} failed: {e}")
            self._stop.wait(self.interval)

    def poll_once(self) -> int:
        """Fetch changes since the cursor and deliver them. Returns events delivered."""
        rows = self._client.select(
            self.table, self.filters, since=self._cursor, order_by="updated_at"
        )
        delivered = 0
        for row in rows:
            if self._stop.is_set():
                break
            record_id = row.get("id")
            if not record_id:
                continue
            marker = (int(row.get("sync_version") or 0), row.get("deleted_at"))
            seen = self._seen.get(record_id)
            previous = seen[0] if seen else None
            if previous == marker:
                continue  # boundary row already delivered

            if row.get("deleted_at"):
                event = EVENT_DELETE
            elif previous is None:
                event = EVENT_INSERT
            else:
                event = EVENT_UPDATE

            try:
                self._on_event(event, row)
            except Exception:
                logger.exception(f"Change handler failed for {self.table}/{record_id}")
            updated_at = parse_datetime(row.get("updated_at"))
            self._seen[record_id] = (marker, updated_at)
            delivered += 1

            if updated_at and (self._cursor is None or updated_at > self._cursor):
                self._cursor = updated_at
        self._prune_seen()
        return delivered

    def _prune_seen(self) -> None:
        """Forget rows strictly older than the cursor; only boundary rows need dedup."""
        if self._cursor is None:
            return
        stale = [
            record_id
            for record_id, (_, updated_at) in self._seen.items()
            if updated_at is None or updated_at < self._cursor
        ]
        for record_id in stale:
            del self._seen[record_id]
