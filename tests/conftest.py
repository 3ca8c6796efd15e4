"""
Pytest fixtures and test configuration for protech tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from protech.auth import Session, SessionProvider
from protech.config import Settings
from protech.errors import ConnectivityError
from protech.storage import SQLiteStore
from protech.sync import OfflineQueue, SyncCoordinator
from protech.types import (
    Customer,
    Employee,
    InventoryItem,
    Ticket,
    format_datetime,
    parse_datetime,
)

SHOP_ID = "shop-1"
OTHER_SHOP_ID = "shop-2"


class FakeClock:
    """Controllable clock shared by the store, queue and syncers."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class FakeSubscription:
    def __init__(self, table: str, filters: Dict[str, Any], on_event):
        self.table = table
        self.filters = filters
        self.on_event = on_event
        self.active = True
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1
        self.active = False

    def emit(self, event: str, row: Dict[str, Any]) -> None:
        if self.active:
            self.on_event(event, row)


class FakeRemote:
    """In-memory stand-in for RemoteClient.

    ``offline = True`` makes every data call raise ConnectivityError and the
    health check report unreachable. ``fail_next(method, exc)`` injects a
    single failure for one method.
    """

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.offline = False
        self.health_checks = 0
        self.subscriptions: List[FakeSubscription] = []
        self._failures: Dict[str, List[Exception]] = {}

    # --- test helpers ---

    def seed(self, table: str, row: Dict[str, Any]) -> None:
        self.tables.setdefault(table, {})[row["id"]] = dict(row)

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(table, {}).values())

    def row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self.tables.get(table, {}).get(record_id)

    def fail_next(self, method: str, exc: Exception, times: int = 1) -> None:
        self._failures.setdefault(method, []).extend([exc] * times)

    def calls_for(self, method: str, table: Optional[str] = None) -> List[tuple]:
        return [c for c in self.calls if c[0] == method and (table is None or c[1] == table)]

    def _enter(self, method: str, table: str, *extra) -> None:
        self.calls.append((method, table, *extra))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)
        if self.offline:
            raise ConnectivityError("Connection to backend failed: network is unreachable")

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for column, value in filters.items():
            if value is None:
                if row.get(column) is not None:
                    return False
            elif row.get(column) != value:
                return False
        return True

    # --- RemoteDataClient ---

    def upsert(self, table, rows):
        self._enter("upsert", table, [r["id"] for r in rows])
        stored = self.tables.setdefault(table, {})
        for row in rows:
            merged = dict(stored.get(row["id"], {}))
            merged.update(row)
            stored[row["id"]] = merged
        return [dict(r) for r in rows]

    def select(
        self,
        table,
        filters=None,
        *,
        since=None,
        until=None,
        since_column="updated_at",
        order_by=None,
        limit=None,
    ):
        self._enter("select", table)
        rows = [r for r in self.rows(table) if self._matches(r, filters or {})]
        if since is not None:
            rows = [r for r in rows if r.get(since_column) and parse_datetime(r[since_column]) >= since]
        if until is not None:
            rows = [r for r in rows if r.get(since_column) and parse_datetime(r[since_column]) <= until]
        if order_by:
            column = order_by.lstrip("-")
            rows.sort(key=lambda r: r.get(column) or "", reverse=order_by.startswith("-"))
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    def delete(self, table, filters):
        self._enter("delete", table)
        doomed = [rid for rid, r in self.tables.get(table, {}).items() if self._matches(r, filters)]
        for rid in doomed:
            del self.tables[table][rid]
        return len(doomed)

    def soft_delete(self, table, record_id, deleted_at, *, sync_version=None):
        self._enter("soft_delete", table, record_id)
        row = self.tables.get(table, {}).get(record_id)
        if row is None:
            return 0
        row["deleted_at"] = format_datetime(deleted_at)
        row["updated_at"] = format_datetime(deleted_at)
        if sync_version is not None:
            row["sync_version"] = sync_version
        return 1

    def count(self, table, filters=None):
        self._enter("count", table)
        return len([r for r in self.rows(table) if self._matches(r, filters or {})])

    def health_check(self):
        self.health_checks += 1
        return not self.offline

    def subscribe(self, table, filters, on_event, *, interval=None):
        subscription = FakeSubscription(table, filters, on_event)
        self.subscriptions.append(subscription)
        return subscription

    def close(self):
        pass


@pytest.fixture(autouse=True)
def protech_home(tmp_path, monkeypatch):
    """Keep logs, backups and settings files inside the test's temp directory."""
    home = tmp_path / "protech-home"
    monkeypatch.setenv("PROTECH_DATA_DIR", str(home))
    for name in ("BACKEND_URL", "API_KEY", "ACCESS_TOKEN", "SHOP_ID", "ROLE", "USER_ID"):
        monkeypatch.delenv(f"PROTECH_{name}", raising=False)
    return home


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db, clock):
    """SQLiteStore for SHOP_ID backed by a temp file."""
    store = SQLiteStore(SHOP_ID, db_path=temp_db, now_fn=clock.now)
    yield store
    store.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def session():
    return SessionProvider(Session(shop_id=SHOP_ID, role="admin", user_id="user-1"))


@pytest.fixture
def settings():
    return Settings(shop_id=SHOP_ID, role="admin", connectivity_ttl=0, batch_size=50)


@pytest.fixture
def queue(store, remote, clock):
    return OfflineQueue(
        store,
        remote,
        max_retries=3,
        base_delay=5.0,
        max_delay=300.0,
        connectivity_ttl=0,
        now_fn=clock.now,
    )


@pytest.fixture
def coordinator(store, remote, session, settings, clock):
    coordinator = SyncCoordinator(store, remote, session, settings, now_fn=clock.now)
    yield coordinator
    coordinator.close()


@pytest.fixture
def make_customer(store):
    """Factory that saves a customer locally (pending, v1) and returns it."""

    def _make(**fields):
        fields.setdefault("first_name", "Ada")
        fields.setdefault("last_name", "Lovelace")
        fields.setdefault("email", "ada@example.com")
        customer = Customer(shop_id=SHOP_ID, **fields)
        store.save(customer)
        return customer

    return _make


@pytest.fixture
def make_ticket(store):
    def _make(customer_id, **fields):
        fields.setdefault("device_type", "phone")
        fields.setdefault("issue_description", "Cracked screen")
        ticket = Ticket(shop_id=SHOP_ID, customer_id=customer_id, **fields)
        store.save(ticket)
        return ticket

    return _make


@pytest.fixture
def make_item(store):
    def _make(**fields):
        fields.setdefault("name", "iPhone 12 screen")
        fields.setdefault("quantity", 10)
        fields.setdefault("min_quantity", 2)
        item = InventoryItem(shop_id=SHOP_ID, **fields)
        store.save(item)
        return item

    return _make


@pytest.fixture
def make_employee(store):
    def _make(**fields):
        fields.setdefault("email", "tech@example.com")
        fields.setdefault("first_name", "Grace")
        fields.setdefault("last_name", "Hopper")
        employee = Employee(shop_id=SHOP_ID, **fields)
        store.save(employee)
        return employee

    return _make


def remote_customer_row(record_id: str, version: int, **fields) -> Dict[str, Any]:
    """A customer row as the backend would return it."""
    row = {
        "id": record_id,
        "shop_id": SHOP_ID,
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": None,
        "address": None,
        "notes": None,
        "square_customer_id": None,
        "created_at": "2026-01-10T09:00:00.000000+00:00",
        "updated_at": "2026-01-15T12:00:00.000000+00:00",
        "deleted_at": None,
        "sync_version": version,
    }
    row.update(fields)
    return row


@pytest.fixture
def customer_row():
    return remote_customer_row
