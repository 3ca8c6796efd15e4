"""Local storage for protech."""

from protech.storage.schema import ENTITY_TABLES, validate_table_name
from protech.storage.sqlite import SQLiteStore

__all__ = [
    "ENTITY_TABLES",
    "SQLiteStore",
    "validate_table_name",
]
