# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Volback Exceptions - Custom exceptions for the volback package.

Fatal errors abort a run without claiming partial success. Everything a run
can survive is reported as a warning on its result object instead.
"""


class VolbackError(Exception):
    """Base exception for all volback errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(VolbackError):
    """Raised when configuration is invalid."""

    pass


# ----------------------------------------------------------------------------
# Run-level outcomes
# ----------------------------------------------------------------------------


class FatalBackupError(VolbackError):
    """Raised when a backup run could not produce a local archive at all."""

    pass


class FatalRestoreError(VolbackError):
    """
    Raised when a required volume could not be replaced.

    Volumes may be in an indeterminate state; operator intervention is needed.
    """

    pass


class Busy(VolbackError):
    """Raised when the run-lock could not be acquired within its timeout."""

    pass


class RunCancelled(VolbackError):
    """Raised when a run honoured a cancellation request between phases."""

    pass


class NoBackupAvailable(VolbackError):
    """Raised when no archive exists locally or remotely."""

    pass


# ----------------------------------------------------------------------------
# Archive engine
# ----------------------------------------------------------------------------


class SourceUnavailable(VolbackError):
    """Raised when a volume to be archived cannot be read."""

    pass


class DiskFull(VolbackError):
    """Raised when the staging area ran out of space."""

    pass


class CorruptArchive(VolbackError):
    """Raised when an archive lacks its required inner payloads."""

    pass


class UnsupportedFormat(VolbackError):
    """Raised when the outer archive envelope cannot be parsed."""

    pass


class WriteFailure(VolbackError):
    """Raised when a volume could not be replaced from its payload."""

    pass


class InvalidArchiveName(VolbackError):
    """Raised when an archive name does not decode to a valid timestamp."""

    pass


# ----------------------------------------------------------------------------
# Remote store
# ----------------------------------------------------------------------------


class NotFound(VolbackError):
    """Raised when a remote object does not exist."""

    pass


class TransferFailure(VolbackError):
    """Raised on network, auth or timeout errors talking to the remote store."""

    pass


class IntegrityMismatch(VolbackError):
    """Raised when the uploaded object size differs from the local file."""

    pass


class EmptyObject(VolbackError):
    """Raised when a downloaded object has zero bytes."""

    pass


# ----------------------------------------------------------------------------
# Service lifecycle
# ----------------------------------------------------------------------------


class ServiceTransitionError(VolbackError):
    """Raised on a lifecycle transition the state machine does not allow."""

    pass


class ServiceCommandError(VolbackError):
    """Raised when the container runtime rejected a start/stop/inspect command."""

    pass


class DatabaseUnavailable(VolbackError):
    """Raised when the database could not be reached for a probe."""

    pass


class UserCountFailed(VolbackError):
    """Raised when the database answered but the user records could not be counted."""

    pass
