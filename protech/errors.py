"""Error taxonomy for protech sync.

Every error raised across the store, remote client, syncers and migration
service derives from :class:`SyncError` and carries a ``kind``. Only
``connectivity`` errors are retryable; the syncer boundary converts them into
queued operations. Everything else reaches the caller.
"""

from typing import Optional

# Error kinds
CONNECTIVITY = "connectivity"
PERMISSION_DENIED = "permission_denied"
VALIDATION = "validation"
CONFLICT = "conflict"
UNKNOWN = "unknown"

# Categories used when summarising free-text errors (CLI output, reports)
SYNC_ERROR_NETWORK = "network"
SYNC_ERROR_PERMISSION = "permission"
SYNC_ERROR_VALIDATION = "validation"
SYNC_ERROR_CONFLICT = "conflict"
SYNC_ERROR_APPLY = "apply_failed"


class SyncError(Exception):
    """Base for all protech sync errors."""

    kind = UNKNOWN
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        entity_type: Optional[str] = None,
        record_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.record_id = record_id

    def __str__(self) -> str:
        if self.entity_type and self.record_id:
            return f"{self.message} [{self.entity_type}/{self.record_id}]"
        return self.message


class ConnectivityError(SyncError):
    """Remote unreachable, timed out or returned a server error."""

    kind = CONNECTIVITY
    retryable = True


class PermissionDeniedError(SyncError):
    """Tenant mismatch, role rejection or row-level security denial."""

    kind = PERMISSION_DENIED


class NotAuthenticatedError(PermissionDeniedError):
    """No active session."""

    pass


class ValidationError(SyncError):
    """Malformed record. Retrying will not help."""

    kind = VALIDATION


class ConflictError(SyncError):
    """Raised when a save would lower a record's sync_version."""

    kind = CONFLICT

    def __init__(
        self, entity_type: str, record_id: str, stored_version: int, attempted_version: int
    ):
        self.stored_version = stored_version
        self.attempted_version = attempted_version
        super().__init__(
            f"Version regression: stored v{stored_version}, attempted v{attempted_version}",
            entity_type=entity_type,
            record_id=record_id,
        )


class UnknownSyncError(SyncError):
    kind = UNKNOWN


class SyncInProgressError(SyncError):
    """A pass for the same entity type is already running."""

    kind = UNKNOWN


class MigrationServiceError(SyncError):
    """Migration precondition failure (already running, nothing to migrate)."""

    kind = UNKNOWN


_NETWORK_MARKERS = ("timeout", "timed out", "connection", "network", "offline", "unreachable")
_PERMISSION_MARKERS = ("permission", "denied", "forbidden", "unauthorized", "row-level security")
_VALIDATION_MARKERS = ("validation", "invalid", "malformed", "schema", "required")


def classify_sync_error(error: Optional[str]) -> str:
    """Map a free-text sync error to a display category."""
    if not error:
        return SYNC_ERROR_APPLY
    text = error.lower()
    if "conflict" in text:
        return SYNC_ERROR_CONFLICT
    if any(marker in text for marker in _NETWORK_MARKERS):
        return SYNC_ERROR_NETWORK
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return SYNC_ERROR_PERMISSION
    if any(marker in text for marker in _VALIDATION_MARKERS):
        return SYNC_ERROR_VALIDATION
    return SYNC_ERROR_APPLY


def error_kind(exc: BaseException) -> str:
    """Return the taxonomy kind for any exception."""
    if isinstance(exc, SyncError):
        return exc.kind
    return UNKNOWN
