"""Conversion between record dataclasses and SQLite rows."""

import sqlite3
from dataclasses import MISSING
from enum import Enum
from typing import Any, Dict

from protech.types import RECORD_TYPES, CloudSyncStatus, SyncRecord, format_datetime, parse_datetime

from .schema import BOOLEAN, INTEGER, REAL, TIMESTAMP, columns_for


def to_db_value(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == TIMESTAMP:
        return format_datetime(parse_datetime(value))
    if kind == BOOLEAN:
        return 1 if value else 0
    if kind == INTEGER:
        return int(value)
    if kind == REAL:
        return float(value)
    if isinstance(value, Enum):
        return value.value
    return value


def from_db_value(kind: str, value: Any) -> Any:
    if value is None:
        return None
    if kind == TIMESTAMP:
        return parse_datetime(value)
    if kind == BOOLEAN:
        return bool(value)
    return value


def record_to_row(record: SyncRecord) -> Dict[str, Any]:
    """Flatten a record into column -> SQLite value."""
    return {
        name: to_db_value(kind, getattr(record, name))
        for name, kind in columns_for(record.entity_type)
    }


def row_to_record(entity_type: str, row: sqlite3.Row) -> SyncRecord:
    """Build the entity dataclass for a row."""
    cls = RECORD_TYPES[entity_type]
    keys = row.keys()
    values: Dict[str, Any] = {}
    for name, kind in columns_for(entity_type):
        if name not in keys:
            continue
        value = from_db_value(kind, row[name])
        if value is None:
            # let a non-null dataclass default stand in for NULL columns
            default = cls.__dataclass_fields__[name].default
            if default is not MISSING and default is not None:
                continue
        values[name] = value
    values["cloud_sync_status"] = CloudSyncStatus(row["cloud_sync_status"])
    return cls(**values)


def record_snapshot(record: SyncRecord) -> Dict[str, Any]:
    """JSON-safe dict of a record's columns."""
    return record_to_row(record)
