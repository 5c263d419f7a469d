#!/usr/bin/env python3
"""
Availability tracking for cloud-synced files.

On a synced root (iCloud Drive and friends) a file can exist in the listing
while its contents are still remote ("dataless"). The tracker probes that
state, asks the provider to fetch files, and lets callers wait for a file to
become local with a bounded timeout.

Listeners are called as ``listener(path, is_downloading)`` whenever a path
starts or stops downloading; the document store uses this to flip the
``is_downloading`` flag on catalog entries.
"""

import logging
import os
import shutil
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

logger = logging.getLogger("taxbox.availability")

# macOS st_flags bit for files whose data has been evicted to the cloud
SF_DATALESS = 0x40000000

DEFAULT_TIMEOUT = 30.0
DEFAULT_POLL_INTERVAL = 0.5


class DownloadStatus(Enum):
    CURRENT = "current"
    DOWNLOADED = "downloaded"
    NOT_DOWNLOADED = "not_downloaded"

    @property
    def is_local(self) -> bool:
        return self is not DownloadStatus.NOT_DOWNLOADED


def probe_status(path: str | Path) -> DownloadStatus:
    """Probe whether the contents of path are on this machine."""
    try:
        st = os.stat(path)
    except OSError:
        return DownloadStatus.CURRENT
    if getattr(st, "st_flags", 0) & SF_DATALESS:
        return DownloadStatus.NOT_DOWNLOADED
    return DownloadStatus.CURRENT


def request_materialization(path: str | Path) -> None:
    """Ask the sync provider to download path.

    Uses ``brctl download`` where available (macOS). Elsewhere reading the
    first byte is enough to make a file-provider fetch the file.
    """
    brctl = shutil.which("brctl")
    if brctl:
        subprocess.run(
            [brctl, "download", str(path)],
            capture_output=True,
            timeout=10,
            check=False,
        )
        return
    with open(path, "rb") as f:
        f.read(1)


class AvailabilityTracker:
    """Tracks in-flight downloads and wakes up whoever is waiting on them."""

    def __init__(
        self,
        probe: Callable[[Path], DownloadStatus] = probe_status,
        requester: Callable[[Path], None] = request_materialization,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ):
        self._probe = probe
        self._requester = requester
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._pending: dict[Path, threading.Event] = {}
        self._listeners: list[Callable[[Path, bool], None]] = []

    def add_listener(self, listener: Callable[[Path, bool], None]) -> None:
        self._listeners.append(listener)

    def _notify(self, path: Path, is_downloading: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(path, is_downloading)
            except Exception:
                logger.exception(f"Availability listener failed for {path.name}")

    def status(self, path: str | Path) -> DownloadStatus:
        return self._probe(Path(path))

    def is_local(self, path: str | Path) -> bool:
        return self.status(path).is_local

    def is_downloading(self, path: str | Path) -> bool:
        with self._lock:
            return Path(path) in self._pending

    @property
    def in_flight(self) -> list[Path]:
        with self._lock:
            return list(self._pending)

    def trigger_download(self, path: str | Path) -> bool:
        """Start downloading path. Returns False if a download is already in flight."""
        path = Path(path)
        with self._lock:
            if path in self._pending:
                return False
            self._pending[path] = threading.Event()

        logger.debug(f"Requesting download of {path.name}")
        self._notify(path, True)
        try:
            self._requester(path)
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning(f"Download request for {path.name} failed: {e}")
        return True

    def _finish(self, path: Path) -> bool:
        with self._lock:
            event = self._pending.pop(path, None)
        if event is None:
            return False
        event.set()
        self._notify(path, False)
        return True

    def ensure_available(self, path: str | Path, timeout: float = DEFAULT_TIMEOUT) -> bool:
        """Block until path is local or the timeout passes.

        Returns:
            True if the file is local, False on timeout or cancel. Either way
            the path is no longer flagged as downloading when this returns.
        """
        path = Path(path)
        if self.is_local(path):
            self._finish(path)
            return True

        self.trigger_download(path)
        with self._lock:
            event = self._pending.get(path)
        if event is None:
            return self.is_local(path)

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            if event.wait(min(self.poll_interval, remaining)):
                # Completed by notify_changed/poll, or cancelled
                return self.is_local(path)
            if self.is_local(path):
                self._finish(path)
                return True

        self._finish(path)
        logger.warning(f"Timed out after {timeout:g}s waiting for {path.name}")
        return False

    def notify_changed(self, paths: Iterable[str | Path]) -> list[Path]:
        """Re-probe paths after a change notification; returns those that became local."""
        completed = []
        for path in map(Path, paths):
            if self.is_downloading(path) and self.is_local(path):
                if self._finish(path):
                    completed.append(path)
        return completed

    def poll(self) -> list[Path]:
        """Re-probe every in-flight download."""
        return self.notify_changed(self.in_flight)

    def cancel(self, path: str | Path) -> None:
        """Abandon a download wait and clear its flag."""
        self._finish(Path(path))
