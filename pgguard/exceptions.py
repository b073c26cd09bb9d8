# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pg-guard Exceptions - Custom exceptions for the pgguard package.

Restore errors are split the way operators need to react to them:
validation failures never touch the target, cancellations exit cleanly,
and replace failures may leave the target partially replaced.
"""


class PgGuardError(Exception):
    """Base exception for all pg-guard errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PgGuardError):
    """Raised when configuration is invalid."""

    pass


class BackupError(PgGuardError):
    """Raised when artifact storage operations fail."""

    pass


class BackupFailed(BackupError):
    """Raised when a dump exits with an error or produces an unusable artifact."""

    pass


class RestoreError(PgGuardError):
    """Raised when restore operations fail."""

    pass


class ValidationFailure(RestoreError):
    """A restore was rejected before any destructive action was attempted."""

    pass


class ArtifactNotFound(ValidationFailure):
    """The requested artifact path does not exist."""

    pass


class ArtifactCorrupt(ValidationFailure):
    """The artifact failed the decompression self-test."""

    pass


class TargetMissing(ValidationFailure):
    """The target database of a database-scope restore does not exist."""

    pass


class DatabaseUnreachable(ValidationFailure):
    """No connection strategy reached the server before the restore."""

    pass


class SafetyBackupFailed(ValidationFailure):
    """The pre-restore snapshot failed and skipping it was not accepted."""

    pass


class UserCancelled(RestoreError):
    """The operator did not type the required confirmation literal."""

    pass


class ReplaceFailed(RestoreError):
    """The destructive replace step failed; the target may be partially replaced."""

    pass


class VerificationInconclusive(RestoreError):
    """The replace succeeded but the postcondition query failed."""

    pass


class ProbeError(PgGuardError):
    """Raised when no connection strategy reaches the database."""

    pass


class CommandError(PgGuardError):
    """Raised when an external command exits with a non-zero status."""

    pass


class ServiceError(PgGuardError):
    """Raised when a service manager operation fails."""

    pass


class CredentialError(PgGuardError):
    """Raised when service-account credentials cannot be created or stored."""

    pass


class JournalError(PgGuardError):
    """Raised when the operation journal cannot be read or written."""

    pass
