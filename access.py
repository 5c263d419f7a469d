#!/usr/bin/env python3
"""
Revocable write access to the storage root.

Mutations go through ``require()`` first. When the root turns out to be
unwritable (sandbox grant lost, read-only mount, ...) the capability pauses
itself and calls ``on_access_lost`` so the front end can ask the user to pick
the folder again. ``restore()`` resumes it.
"""

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from errors import PermissionDeniedError, is_permission_error, storage_error

logger = logging.getLogger("taxbox.access")

PROBE_NAME = ".taxbox_access"


class StorageAccess:
    """Write capability for one storage root."""

    def __init__(self, root: str | Path, on_access_lost: Optional[Callable[[str], None]] = None):
        self.root = Path(root)
        self.on_access_lost = on_access_lost
        self._lock = threading.Lock()
        self._paused_reason: Optional[str] = None

    @property
    def is_paused(self) -> bool:
        return self._paused_reason is not None

    def check(self) -> bool:
        """Probe write access by creating and removing a hidden file at the root."""
        probe = self.root / PROBE_NAME
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            probe.write_bytes(b"")
            probe.unlink()
            return True
        except OSError as e:
            logger.warning(f"No write access to {self.root}: {e}")
            return False

    def revoke(self, reason: str) -> None:
        with self._lock:
            already = self._paused_reason is not None
            self._paused_reason = reason
        if not already:
            logger.error(f"Storage access paused: {reason}")
            if self.on_access_lost is not None:
                self.on_access_lost(reason)

    def restore(self, root: str | Path | None = None) -> bool:
        """Resume access (optionally for a new root). Returns the result of check()."""
        if root is not None:
            self.root = Path(root)
        with self._lock:
            self._paused_reason = None
        ok = self.check()
        if not ok:
            self.revoke(f"Cannot write to {self.root}")
        return ok

    def require(self) -> None:
        """Raise PermissionDeniedError unless mutations may proceed."""
        reason = self._paused_reason
        if reason is not None:
            raise PermissionDeniedError(self.root, "access", reason)
        if not self.check():
            reason = f"Cannot write to {self.root}"
            self.revoke(reason)
            raise PermissionDeniedError(self.root, "access", reason)

    def with_access(self, fn: Callable, *args, **kwargs):
        """Run fn once access is confirmed; permission errors pause the capability."""
        self.require()
        try:
            return fn(*args, **kwargs)
        except OSError as e:
            if is_permission_error(e):
                path = e.filename or self.root
                error = storage_error(e, path, getattr(fn, "__name__", "operation"))
                self.revoke(str(error))
                raise error from e
            raise

    def pause_for(self, error: PermissionDeniedError) -> None:
        """Pause after a permission failure surfaced somewhere else."""
        self.revoke(str(error))
