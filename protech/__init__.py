"""
protech - offline-first sync for ProTech repair-shop data.

Local records live in SQLite and are reconciled with the shop's remote
tables by version; changes made offline are queued and replayed.
"""

from .migration import DataMigrationService, MigrationOptions
from .storage import SQLiteStore
from .sync import OfflineQueue, SyncCoordinator

try:
    from importlib.metadata import version

    __version__ = version("protech-sync")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "DataMigrationService",
    "MigrationOptions",
    "OfflineQueue",
    "SQLiteStore",
    "SyncCoordinator",
]
