#!/usr/bin/env python3
"""
error_codes.py: Standardized error codes for the Pattern Vault core

Every failure the core can surface to the orchestration layer is a distinct
exception class carrying a stable ErrorCode, so callers can present a specific
remediation without parsing messages.
"""

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCode(str, Enum):
    """Standardized error codes for the Pattern Vault core"""

    # Storage / key material
    VAULT_LOCKED = "ERR_VAULT_LOCKED"
    VAULT_CORRUPT = "ERR_VAULT_CORRUPT"
    VAULT_BUSY = "ERR_VAULT_BUSY"

    # PDX document validation
    SCHEMA_INVALID = "ERR_SCHEMA_INVALID"
    INTEGRITY_MISMATCH = "ERR_INTEGRITY_MISMATCH"
    SIGNATURE_INVALID = "ERR_SIGNATURE_INVALID"
    CONSENT_DENIED = "ERR_CONSENT_DENIED"

    # Policy
    RATE_LIMIT = "ERR_RATE_LIMIT"
    IMPORT_TOO_LARGE = "ERR_IMPORT_TOO_LARGE"
    CONFLICT_UNRESOLVED = "ERR_CONFLICT_UNRESOLVED"

    # Lookups
    SNAPSHOT_NOT_FOUND = "ERR_SNAPSHOT_NOT_FOUND"
    PATTERN_NOT_FOUND = "ERR_PATTERN_NOT_FOUND"


class ErrorSeverity(str, Enum):
    """Error severity levels for logging and presentation"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class VaultError(Exception):
    """Base class for every error raised by the vault core."""

    error_code: ErrorCode = ErrorCode.SCHEMA_INVALID
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self, trace_id: Optional[str] = None) -> Dict[str, Any]:
        """Render the standardized error response for the orchestration layer."""
        return {
            "success": False,
            "error_code": self.error_code.value,
            "message": self.message,
            "trace_id": trace_id or f"trace_{uuid.uuid4().hex[:12]}",
            "details": self.details,
            "_metadata": {
                "severity": self.severity.value,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "category": _get_error_category(self.error_code),
            },
        }


class VaultLockedError(VaultError):
    """No usable key material exists and none can be created."""

    error_code = ErrorCode.VAULT_LOCKED
    severity = ErrorSeverity.CRITICAL


class VaultCorruptError(VaultError):
    """Authenticated decryption of the vault (or a snapshot) failed.

    Recoverable only by restoring a prior snapshot, so the error carries the
    snapshot ids that are still available.
    """

    error_code = ErrorCode.VAULT_CORRUPT
    severity = ErrorSeverity.CRITICAL

    def __init__(
        self,
        message: str,
        available_snapshots: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.available_snapshots = list(available_snapshots or [])
        details = dict(details or {})
        details["available_snapshots"] = self.available_snapshots
        super().__init__(message, details=details)


class VaultBusyError(VaultError):
    """The vault lock could not be acquired within the timeout."""

    error_code = ErrorCode.VAULT_BUSY
    severity = ErrorSeverity.LOW

    def __init__(self, message: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(message, details={"timeout_seconds": timeout_seconds})


class SchemaInvalidError(VaultError):
    """A PDX document is malformed or of an unsupported format version."""

    error_code = ErrorCode.SCHEMA_INVALID
    severity = ErrorSeverity.HIGH


class IntegrityMismatchError(VaultError):
    """The recomputed document hash does not match metadata.integrity.hash."""

    error_code = ErrorCode.INTEGRITY_MISMATCH
    severity = ErrorSeverity.HIGH

    def __init__(self, expected: str, actual: str):
        super().__init__(
            "Integrity check failed: document hash mismatch",
            details={"expected": expected, "actual": actual},
        )


class SignatureInvalidError(VaultError):
    """The document signature does not verify against the embedded key."""

    error_code = ErrorCode.SIGNATURE_INVALID
    severity = ErrorSeverity.HIGH


class ConsentDeniedError(VaultError):
    """Owner consent does not permit the requested operation."""

    error_code = ErrorCode.CONSENT_DENIED

    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(
            f"Owner consent denies '{permission}'",
            details={"permission": permission},
        )


class RateLimitError(VaultError):
    """An export was attempted inside the cooldown window."""

    error_code = ErrorCode.RATE_LIMIT
    severity = ErrorSeverity.LOW

    def __init__(self, retry_after: timedelta, next_allowed: datetime):
        self.retry_after = retry_after
        self.next_allowed = next_allowed
        super().__init__(
            f"Export rate limit exceeded, retry in {int(retry_after.total_seconds())}s",
            details={
                "retry_after": int(retry_after.total_seconds()),
                "next_allowed": next_allowed.isoformat(),
            },
        )


class ImportTooLargeError(VaultError):
    """A single import would introduce more entries than allowed."""

    error_code = ErrorCode.IMPORT_TOO_LARGE
    severity = ErrorSeverity.LOW

    def __init__(self, count: int, limit: int):
        self.count = count
        self.limit = limit
        super().__init__(
            f"Import contains {count} entries, limit is {limit}",
            details={"count": count, "limit": limit},
        )


class ConflictUnresolvedError(VaultError):
    """Incoming entries collide with existing ones and no mode was given."""

    error_code = ErrorCode.CONFLICT_UNRESOLVED
    severity = ErrorSeverity.LOW

    def __init__(self, collisions: List[str]):
        self.collisions = list(collisions)
        super().__init__(
            f"{len(self.collisions)} colliding entries require a conflict mode",
            details={"collisions": self.collisions},
        )


class SnapshotNotFoundError(VaultError):
    """The requested snapshot id is not (or no longer) retained."""

    error_code = ErrorCode.SNAPSHOT_NOT_FOUND
    severity = ErrorSeverity.LOW

    def __init__(self, snapshot_id: str):
        self.snapshot_id = snapshot_id
        super().__init__(
            f"Snapshot not found: {snapshot_id}",
            details={"snapshot_id": snapshot_id},
        )


class PatternNotFoundError(VaultError):
    """No pattern with the given id exists in the vault."""

    error_code = ErrorCode.PATTERN_NOT_FOUND
    severity = ErrorSeverity.LOW

    def __init__(self, pattern_id: str):
        self.pattern_id = pattern_id
        super().__init__(
            f"Pattern not found: {pattern_id}",
            details={"pattern_id": pattern_id},
        )


def _get_error_category(error_code: ErrorCode) -> str:
    """Categorize error for presentation purposes"""
    if error_code in (ErrorCode.VAULT_LOCKED, ErrorCode.VAULT_CORRUPT, ErrorCode.VAULT_BUSY):
        return "storage"
    elif error_code in (
        ErrorCode.SCHEMA_INVALID,
        ErrorCode.INTEGRITY_MISMATCH,
        ErrorCode.SIGNATURE_INVALID,
    ):
        return "data_integrity"
    elif error_code in (ErrorCode.RATE_LIMIT, ErrorCode.IMPORT_TOO_LARGE):
        return "rate_limiting"
    elif error_code == ErrorCode.CONSENT_DENIED:
        return "consent"
    elif error_code in (
        ErrorCode.CONFLICT_UNRESOLVED,
        ErrorCode.SNAPSHOT_NOT_FOUND,
        ErrorCode.PATTERN_NOT_FOUND,
    ):
        return "client_error"
    else:
        return "unknown"


# Export main components
__all__ = [
    "ErrorCode",
    "ErrorSeverity",
    "VaultError",
    "VaultLockedError",
    "VaultCorruptError",
    "VaultBusyError",
    "SchemaInvalidError",
    "IntegrityMismatchError",
    "SignatureInvalidError",
    "ConsentDeniedError",
    "RateLimitError",
    "ImportTooLargeError",
    "ConflictUnresolvedError",
    "SnapshotNotFoundError",
    "PatternNotFoundError",
]
