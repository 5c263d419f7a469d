#!/usr/bin/env python3
"""
User-owned, ordered list of workflow statuses.

Statuses are an open set: whatever a sidecar says is accepted, and unknown
values found during a scan are appended once. The list only shrinks through
an explicit remove.
"""

import logging
import threading
from typing import Callable, Iterable, Optional

from errors import StatusRegistryError

logger = logging.getLogger("taxbox.statuses")

FALLBACK_STATUS = "Todo"


def normalize_status(value: str) -> str:
    """Trim a status name; blank names are rejected."""
    if not isinstance(value, str):
        raise StatusRegistryError(f"Status must be a string, got {type(value).__name__}")
    name = value.strip()
    if not name:
        raise StatusRegistryError("Status name cannot be blank")
    return name


def _dedupe(names: Iterable[str]) -> list[str]:
    result = []
    for name in names:
        if not isinstance(name, str) or not name.strip():
            continue
        name = name.strip()
        if name not in result:
            result.append(name)
    return result


class StatusRegistry:
    """Thread-safe ordered status list.

    Args:
        statuses: initial order (blanks and duplicates dropped)
        on_change: called with the new list after every change, for persistence
    """

    def __init__(
        self,
        statuses: Iterable[str] = (),
        on_change: Optional[Callable[[list[str]], None]] = None,
    ):
        self._lock = threading.RLock()
        self._statuses = _dedupe(statuses)
        self._on_change = on_change

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._statuses

    def __len__(self) -> int:
        with self._lock:
            return len(self._statuses)

    @property
    def statuses(self) -> list[str]:
        with self._lock:
            return list(self._statuses)

    @property
    def default(self) -> str:
        with self._lock:
            return self._statuses[0] if self._statuses else FALLBACK_STATUS

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(list(self._statuses))

    def add(self, name: str) -> bool:
        """Append a status. Blank or already-present names are ignored."""
        if not isinstance(name, str) or not name.strip():
            return False
        name = name.strip()
        with self._lock:
            if name in self._statuses:
                return False
            self._statuses.append(name)
            self._changed()
        return True

    def discover(self, name: str) -> bool:
        """Register a status seen on disk. Returns True the first time it is seen."""
        added = self.add(name)
        if added:
            logger.info(f"Discovered status '{name.strip()}'")
        return added

    def remove(self, name: str) -> None:
        """Remove a status.

        Raises:
            StatusRegistryError: name is the last remaining status
        """
        with self._lock:
            if name not in self._statuses:
                return
            if len(self._statuses) <= 1:
                raise StatusRegistryError("Cannot remove the last status")
            self._statuses.remove(name)
            self._changed()

    def reorder(self, names: Iterable[str]) -> None:
        """Replace the order wholesale.

        Raises:
            StatusRegistryError: the new order is empty
        """
        new_order = _dedupe(names)
        if not new_order:
            raise StatusRegistryError("Status list cannot be empty")
        with self._lock:
            self._statuses = new_order
            self._changed()
