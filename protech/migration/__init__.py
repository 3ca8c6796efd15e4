"""Bulk migration of local shop data to the remote."""

from protech.migration.models import (
    EntityStatistics,
    MigrationError,
    MigrationOptions,
    MigrationPhase,
    MigrationReport,
    MigrationStatistics,
)
from protech.migration.service import DataMigrationService

__all__ = [
    "DataMigrationService",
    "EntityStatistics",
    "MigrationError",
    "MigrationOptions",
    "MigrationPhase",
    "MigrationReport",
    "MigrationStatistics",
]
