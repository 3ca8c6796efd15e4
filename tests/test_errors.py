"""Tests for the sync error taxonomy."""

import pytest

from protech.errors import (
    CONNECTIVITY,
    PERMISSION_DENIED,
    SYNC_ERROR_APPLY,
    SYNC_ERROR_CONFLICT,
    SYNC_ERROR_NETWORK,
    SYNC_ERROR_PERMISSION,
    SYNC_ERROR_VALIDATION,
    UNKNOWN,
    VALIDATION,
    ConflictError,
    ConnectivityError,
    NotAuthenticatedError,
    PermissionDeniedError,
    SyncError,
    ValidationError,
    classify_sync_error,
    error_kind,
)


class TestErrorKinds:
    def test_only_connectivity_is_retryable(self):
        assert ConnectivityError("x").retryable is True
        for cls in (PermissionDeniedError, ValidationError, SyncError):
            assert cls("x").retryable is False

    def test_kinds(self):
        assert ConnectivityError("x").kind == CONNECTIVITY
        assert PermissionDeniedError("x").kind == PERMISSION_DENIED
        assert NotAuthenticatedError("x").kind == PERMISSION_DENIED
        assert ValidationError("x").kind == VALIDATION

    def test_str_includes_record(self):
        err = ValidationError("bad email", entity_type="customer", record_id="c1")
        assert str(err) == "bad email [customer/c1]"
        assert str(ValidationError("bad")) == "bad"

    def test_conflict_error_carries_versions(self):
        err = ConflictError("customer", "c1", stored_version=3, attempted_version=2)
        assert err.stored_version == 3
        assert err.attempted_version == 2
        assert "stored v3" in str(err)
        assert isinstance(err, SyncError)

    def test_error_kind_of_foreign_exception(self):
        assert error_kind(RuntimeError("boom")) == UNKNOWN
        assert error_kind(ConnectivityError("down")) == CONNECTIVITY


class TestClassifySyncError:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("Request to customers timed out", SYNC_ERROR_NETWORK),
            ("Connection to backend failed", SYNC_ERROR_NETWORK),
            ("Offline - cannot reach remote", SYNC_ERROR_NETWORK),
            ("Permission denied on tickets", SYNC_ERROR_PERMISSION),
            ("new row violates row-level security policy", SYNC_ERROR_PERMISSION),
            ("invalid email: nope", SYNC_ERROR_VALIDATION),
            ("Version conflict on customer/c1", SYNC_ERROR_CONFLICT),
            ("something odd", SYNC_ERROR_APPLY),
            ("", SYNC_ERROR_APPLY),
            (None, SYNC_ERROR_APPLY),
        ],
    )
    def test_categories(self, message, expected):
        assert classify_sync_error(message) == expected
