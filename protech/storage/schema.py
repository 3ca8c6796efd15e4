"""Database schema for protech SQLite storage.

Contains:
- Schema DDL (SCHEMA) and version tracking (SCHEMA_VERSION)
- Entity registry (ENTITY_TABLES, ENTITY_COLUMNS)
- Table allowlist (ALLOWED_TABLES, validate_table_name)
- Database initialization (init_db)
"""

import logging
import os
import sqlite3
from pathlib import Path
from typing import Dict, List, Tuple

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 4

# Column kinds drive conversion between dataclass values and SQLite values
TEXT = "text"
INTEGER = "integer"
REAL = "real"
BOOLEAN = "boolean"
TIMESTAMP = "timestamp"

SYNC_COLUMNS: List[Tuple[str, str]] = [
    ("id", TEXT),
    ("shop_id", TEXT),
    ("created_at", TIMESTAMP),
    ("updated_at", TIMESTAMP),
    ("deleted_at", TIMESTAMP),
    ("sync_version", INTEGER),
    ("cloud_sync_status", TEXT),
]

ENTITY_TABLES: Dict[str, str] = {
    "customer": "customers",
    "ticket": "tickets",
    "inventory": "inventory_items",
    "employee": "employees",
    "appointment": "appointments",
    "time_clock": "time_clock_entries",
    "payment": "payments",
    "loyalty_member": "loyalty_members",
}

ENTITY_COLUMNS: Dict[str, List[Tuple[str, str]]] = {
    "customer": [
        ("first_name", TEXT),
        ("last_name", TEXT),
        ("email", TEXT),
        ("phone", TEXT),
        ("address", TEXT),
        ("notes", TEXT),
        ("square_customer_id", TEXT),
    ],
    "ticket": [
        ("customer_id", TEXT),
        ("ticket_number", INTEGER),
        ("device_type", TEXT),
        ("device_model", TEXT),
        ("device_serial_number", TEXT),
        ("issue_description", TEXT),
        ("notes", TEXT),
        ("status", TEXT),
        ("priority", TEXT),
        ("estimated_cost", REAL),
        ("actual_cost", REAL),
        ("checked_in_at", TIMESTAMP),
        ("started_at", TIMESTAMP),
        ("completed_at", TIMESTAMP),
        ("picked_up_at", TIMESTAMP),
    ],
    "inventory": [
        ("sku", TEXT),
        ("part_number", TEXT),
        ("name", TEXT),
        ("category", TEXT),
        ("cost", REAL),
        ("price", REAL),
        ("quantity", INTEGER),
        ("min_quantity", INTEGER),
        ("is_active", BOOLEAN),
    ],
    "employee": [
        ("employee_number", TEXT),
        ("email", TEXT),
        ("first_name", TEXT),
        ("last_name", TEXT),
        ("phone", TEXT),
        ("role", TEXT),
        ("is_active", BOOLEAN),
        ("hourly_rate", REAL),
        ("hire_date", TIMESTAMP),
    ],
    "appointment": [
        ("customer_id", TEXT),
        ("ticket_id", TEXT),
        ("appointment_type", TEXT),
        ("scheduled_date", TIMESTAMP),
        ("duration", INTEGER),
        ("status", TEXT),
        ("notes", TEXT),
        ("reminder_sent", BOOLEAN),
        ("confirmation_sent", BOOLEAN),
        ("completed_at", TIMESTAMP),
        ("cancelled_at", TIMESTAMP),
        ("cancellation_reason", TEXT),
    ],
    "time_clock": [
        ("employee_id", TEXT),
        ("clock_in_time", TIMESTAMP),
        ("clock_out_time", TIMESTAMP),
        ("break_seconds", INTEGER),
        ("notes", TEXT),
    ],
    "payment": [
        ("customer_id", TEXT),
        ("invoice_id", TEXT),
        ("payment_number", TEXT),
        ("amount", REAL),
        ("payment_method", TEXT),
        ("payment_date", TIMESTAMP),
        ("reference_number", TEXT),
        ("receipt_generated", BOOLEAN),
        ("notes", TEXT),
    ],
    "loyalty_member": [
        ("customer_id", TEXT),
        ("program_id", TEXT),
        ("current_tier_id", TEXT),
        ("total_points", INTEGER),
        ("available_points", INTEGER),
        ("lifetime_points", INTEGER),
        ("visit_count", INTEGER),
        ("total_spent", REAL),
        ("is_active", BOOLEAN),
        ("enrolled_at", TIMESTAMP),
        ("last_activity_at", TIMESTAMP),
    ],
}

# Allowed table names for SQL queries (prevents SQL injection via table names)
ALLOWED_TABLES = frozenset(
    set(ENTITY_TABLES.values())
    | {
        "schema_version",
        "sync_queue",
        "sync_meta",
        "sync_conflicts",
    }
)


def validate_table_name(table: str) -> str:
    """Validate table name against allowlist to prevent SQL injection.

    Raises:
        ValueError: If table name is not in allowlist
    """
    if table not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table}")
    return table


def table_for(entity_type: str) -> str:
    """Return the local table for an entity type."""
    try:
        return validate_table_name(ENTITY_TABLES[entity_type])
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


def columns_for(entity_type: str) -> List[Tuple[str, str]]:
    if entity_type not in ENTITY_COLUMNS:
        raise ValueError(f"Unknown entity type: {entity_type}")
    return SYNC_COLUMNS + ENTITY_COLUMNS[entity_type]


def column_names(entity_type: str) -> List[str]:
    return [name for name, _ in columns_for(entity_type)]


_SYNC_DDL = """
    id TEXT PRIMARY KEY,
    shop_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    sync_version INTEGER NOT NULL DEFAULT 1,
    cloud_sync_status TEXT NOT NULL DEFAULT 'pending'"""


SCHEMA = f"""
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS customers ({_SYNC_DDL},
    first_name TEXT,
    last_name TEXT,
    email TEXT,
    phone TEXT,
    address TEXT,
    notes TEXT,
    square_customer_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_customers_shop ON customers(shop_id);
CREATE INDEX IF NOT EXISTS idx_customers_status ON customers(cloud_sync_status);

CREATE TABLE IF NOT EXISTS tickets ({_SYNC_DDL},
    customer_id TEXT,
    ticket_number INTEGER,
    device_type TEXT,
    device_model TEXT,
    device_serial_number TEXT,
    issue_description TEXT,
    notes TEXT,
    status TEXT DEFAULT 'pending',
    priority TEXT DEFAULT 'normal',
    estimated_cost REAL,
    actual_cost REAL,
    checked_in_at TEXT,
    started_at TEXT,
    completed_at TEXT,
    picked_up_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_tickets_shop ON tickets(shop_id);
CREATE INDEX IF NOT EXISTS idx_tickets_status ON tickets(cloud_sync_status);
CREATE INDEX IF NOT EXISTS idx_tickets_customer ON tickets(customer_id);

CREATE TABLE IF NOT EXISTS inventory_items ({_SYNC_DDL},
    sku TEXT,
    part_number TEXT,
    name TEXT NOT NULL DEFAULT '',
    category TEXT,
    cost REAL DEFAULT 0,
    price REAL DEFAULT 0,
    quantity INTEGER DEFAULT 0,
    min_quantity INTEGER DEFAULT 0,
    is_active INTEGER DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_inventory_shop ON inventory_items(shop_id);
CREATE INDEX IF NOT EXISTS idx_inventory_status ON inventory_items(cloud_sync_status);

CREATE TABLE IF NOT EXISTS employees ({_SYNC_DDL},
    employee_number TEXT,
    email TEXT NOT NULL DEFAULT '',
    first_name TEXT NOT NULL DEFAULT '',
    last_name TEXT NOT NULL DEFAULT '',
    phone TEXT,
    role TEXT DEFAULT 'technician',
    is_active INTEGER DEFAULT 1,
    hourly_rate REAL,
    hire_date TEXT
);
CREATE INDEX IF NOT EXISTS idx_employees_shop ON employees(shop_id);
CREATE INDEX IF NOT EXISTS idx_employees_status ON employees(cloud_sync_status);

CREATE TABLE IF NOT EXISTS appointments ({_SYNC_DDL},
    customer_id TEXT,
    ticket_id TEXT,
    appointment_type TEXT,
    scheduled_date TEXT,
    duration INTEGER DEFAULT 30,
    status TEXT DEFAULT 'scheduled',
    notes TEXT,
    reminder_sent INTEGER DEFAULT 0,
    confirmation_sent INTEGER DEFAULT 0,
    completed_at TEXT,
    cancelled_at TEXT,
    cancellation_reason TEXT
);
CREATE INDEX IF NOT EXISTS idx_appointments_shop ON appointments(shop_id);
CREATE INDEX IF NOT EXISTS idx_appointments_status ON appointments(cloud_sync_status);
CREATE INDEX IF NOT EXISTS idx_appointments_date ON appointments(scheduled_date);

CREATE TABLE IF NOT EXISTS time_clock_entries ({_SYNC_DDL},
    employee_id TEXT,
    clock_in_time TEXT,
    clock_out_time TEXT,
    break_seconds INTEGER DEFAULT 0,
    notes TEXT
);
CREATE INDEX IF NOT EXISTS idx_time_clock_shop ON time_clock_entries(shop_id);
CREATE INDEX IF NOT EXISTS idx_time_clock_status ON time_clock_entries(cloud_sync_status);

CREATE TABLE IF NOT EXISTS payments ({_SYNC_DDL},
    customer_id TEXT,
    invoice_id TEXT,
    payment_number TEXT,
    amount REAL NOT NULL DEFAULT 0,
    payment_method TEXT DEFAULT 'cash',
    payment_date TEXT,
    reference_number TEXT,
    receipt_generated INTEGER DEFAULT 0,
    notes TEXT
);
CREATE INDEX IF NOT EXISTS idx_payments_shop ON payments(shop_id);
CREATE INDEX IF NOT EXISTS idx_payments_status ON payments(cloud_sync_status);
CREATE INDEX IF NOT EXISTS idx_payments_customer ON payments(customer_id);

CREATE TABLE IF NOT EXISTS loyalty_members ({_SYNC_DDL},
    customer_id TEXT,
    program_id TEXT,
    current_tier_id TEXT,
    total_points INTEGER DEFAULT 0,
    available_points INTEGER DEFAULT 0,
    lifetime_points INTEGER DEFAULT 0,
    visit_count INTEGER DEFAULT 0,
    total_spent REAL DEFAULT 0,
    is_active INTEGER DEFAULT 1,
    enrolled_at TEXT,
    last_activity_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_loyalty_members_shop ON loyalty_members(shop_id);
CREATE INDEX IF NOT EXISTS idx_loyalty_members_status ON loyalty_members(cloud_sync_status);
CREATE INDEX IF NOT EXISTS idx_loyalty_members_customer ON loyalty_members(customer_id);

-- Offline operation queue
CREATE TABLE IF NOT EXISTS sync_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    shop_id TEXT NOT NULL,
    operation TEXT NOT NULL,  -- upload, download, delete
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,  -- '*' for entity-wide downloads
    status TEXT NOT NULL DEFAULT 'pending',  -- pending, failed
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    enqueued_at TEXT NOT NULL,
    last_attempt_at TEXT,
    next_attempt_at TEXT,
    revision INTEGER NOT NULL DEFAULT 1,  -- bumped when a newer intent replaces this row
    payload TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_queue_status ON sync_queue(shop_id, status);
CREATE INDEX IF NOT EXISTS idx_sync_queue_entity ON sync_queue(shop_id, entity_type, entity_id);
-- Unique partial index for atomic UPSERT on pending entries
CREATE UNIQUE INDEX IF NOT EXISTS idx_sync_queue_pending_unique
    ON sync_queue(shop_id, entity_type, entity_id) WHERE status = 'pending';

-- Sync metadata (watermarks, migration report, checkpoints)
CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Discarded remote writes, kept for operator visibility
CREATE TABLE IF NOT EXISTS sync_conflicts (
    id TEXT PRIMARY KEY,
    entity_type TEXT NOT NULL,
    record_id TEXT NOT NULL,
    local_version INTEGER NOT NULL,
    remote_version INTEGER NOT NULL,
    resolution TEXT NOT NULL,
    resolved_at TEXT NOT NULL,
    local_summary TEXT,
    remote_summary TEXT,
    diff_hash TEXT
);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_resolved ON sync_conflicts(resolved_at);
CREATE INDEX IF NOT EXISTS idx_sync_conflicts_record ON sync_conflicts(entity_type, record_id);
"""


def init_db(conn: sqlite3.Connection, db_path: Path) -> None:
    """Create tables and record the schema version."""
    conn.executescript(SCHEMA)

    row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
    if row is None:
        conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
    elif row[0] != SCHEMA_VERSION:
        logger.info(f"Updating schema version {row[0]} -> {SCHEMA_VERSION}")
        conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))

    conn.commit()

    # Owner read/write only
    try:
        os.chmod(db_path, 0o600)
    except OSError as e:
        logger.warning(f"Could not set secure permissions: {e}")
