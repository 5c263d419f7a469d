#!/usr/bin/env python3
"""
Error types for TaxBox.

Scan and decode problems are recovered where they happen (a missing or broken
sidecar just means a default record gets synthesized). Mutation problems are
raised to the caller with enough context (path, operation) to show a message.
"""

import errno
from pathlib import Path


class TaxBoxError(Exception):
    """Base class for all TaxBox errors."""


class SidecarDecodeError(TaxBoxError, ValueError):
    """Sidecar bytes could not be decoded into a record."""


class InvalidAmountError(TaxBoxError, ValueError):
    """An amount is not a finite decimal number."""


class StorageIOError(TaxBoxError):
    """A copy/move/write/delete on the storage tree failed."""

    def __init__(self, path: str | Path, operation: str, reason: str = ""):
        self.path = Path(path)
        self.operation = operation
        self.reason = reason
        message = f"{operation} failed for {self.path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class PermissionDeniedError(StorageIOError):
    """Storage access was refused; the user has to re-grant access to the root."""


class FileUnavailableError(TaxBoxError):
    """A remote-only file did not become local before the timeout."""

    def __init__(self, path: str | Path, timeout: float):
        self.path = Path(path)
        self.timeout = timeout
        super().__init__(f"File unavailable after {timeout:g}s: {self.path.name}")


class NoFileAttachedError(TaxBoxError):
    """The record is a placeholder and has nothing to open."""


class StatusRegistryError(TaxBoxError, ValueError):
    """A status registry edit was rejected."""


class RecordNotFoundError(TaxBoxError, LookupError):
    """No catalog entry with the given id."""


PERMISSION_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


def is_permission_error(exc: BaseException) -> bool:
    """Check whether an OSError means we lost (or never had) write access."""
    if isinstance(exc, PermissionError):
        return True
    return isinstance(exc, OSError) and exc.errno in PERMISSION_ERRNOS


def storage_error(exc: OSError, path: str | Path, operation: str) -> StorageIOError:
    """Wrap an OSError in the matching StorageIOError subtype."""
    reason = exc.strerror or str(exc)
    if is_permission_error(exc):
        return PermissionDeniedError(path, operation, reason)
    return StorageIOError(path, operation, reason)
