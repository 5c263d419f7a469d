#!/usr/bin/env python3
"""
Reconciliation: rebuild the in-memory catalog from the storage tree.

The filesystem is the source of truth. A pass scans ``<root>/<year>/``,
pairs every document with its sidecar (or synthesizes a default record when
there is none), migrates legacy single-file records in memory, and asks the
availability tracker which entries are still remote. Passes are read-only.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Optional

from attachments import CatalogEntry, attachment_from_file, describe_files
from availability import AvailabilityTracker
from errors import RecordNotFoundError, TaxBoxError
from scanner import ScanEntry, list_folder_files, scan_root
from sidecar import Attachment, Sidecar, load_sidecar, sidecar_path_for, utc_now
from status_registry import StatusRegistry

logger = logging.getLogger("taxbox.catalog")


# ==============================================================================
# SNAPSHOT
# ==============================================================================

def _sort_key(entry: CatalogEntry):
    return (entry.filename.casefold(), str(entry.path))


@dataclass(frozen=True)
class Catalog:
    """Immutable view of every document, plus the years that have documents."""

    entries: tuple[CatalogEntry, ...] = ()
    years: tuple[int, ...] = ()
    generation: int = 0

    @classmethod
    def build(cls, entries: Iterable[CatalogEntry], generation: int = 0) -> "Catalog":
        ordered = tuple(sorted(entries, key=_sort_key))
        years = tuple(sorted({e.year for e in ordered}, reverse=True))
        return cls(entries=ordered, years=years, generation=generation)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    def find(self, entry_id: str) -> Optional[CatalogEntry]:
        return next((e for e in self.entries if e.id == entry_id), None)

    def find_by_path(self, path: str | Path) -> Optional[CatalogEntry]:
        path = Path(path)
        return next((e for e in self.entries if e.path == path), None)

    def get(self, entry_id: str) -> CatalogEntry:
        entry = self.find(entry_id)
        if entry is None:
            raise RecordNotFoundError(f"No document with id {entry_id}")
        return entry

    def locate(self, entry: CatalogEntry) -> Optional[CatalogEntry]:
        """The current version of entry: same id, or failing that same location."""
        return self.find(entry.id) or self.find_by_path(entry.path)

    def replace(self, entry: CatalogEntry) -> "Catalog":
        """Swap in a new version of an entry (matched by id). Unknown ids are added."""
        others = [e for e in self.entries if e.id != entry.id]
        return Catalog.build([*others, entry], self.generation)

    def without(self, ids: Iterable[str]) -> "Catalog":
        drop = set(ids)
        return Catalog.build([e for e in self.entries if e.id not in drop], self.generation)

    def with_generation(self, generation: int) -> "Catalog":
        return replace(self, generation=generation)

    def carry_ids(self, previous: "Catalog") -> "Catalog":
        """Reuse ids from previous for entries still at the same path."""
        known = {e.path: e.id for e in previous.entries}
        if not known:
            return self
        entries = tuple(
            replace(e, id=known[e.path]) if e.path in known else e for e in self.entries
        )
        return replace(self, entries=entries)

    def filtered(
        self,
        year: Optional[int] = None,
        status: Optional[str] = None,
        query: str = "",
    ) -> list[CatalogEntry]:
        """Entries matching year, status and a case-insensitive substring query.

        The query is matched against the display name, the filename and the notes.
        """
        needle = (query or "").strip().casefold()
        result = []
        for entry in self.entries:
            if year is not None and entry.year != year:
                continue
            if status and entry.record.status != status:
                continue
            if needle and not any(
                needle in text.casefold()
                for text in (entry.record.name, entry.filename, entry.record.notes)
            ):
                continue
            result.append(entry)
        return result

    def total_amount(
        self,
        year: Optional[int] = None,
        status: Optional[str] = None,
        query: str = "",
    ) -> Decimal:
        return sum(
            (e.record.amount for e in self.filtered(year, status, query) if e.record.amount is not None),
            Decimal(0),
        )


# ==============================================================================
# RESOLUTION
# ==============================================================================

def _display_name(scan_entry: ScanEntry) -> str:
    if scan_entry.is_document_folder:
        return scan_entry.path.name
    return scan_entry.path.stem


def synthesize_attachments(scan_entry: ScanEntry) -> list[Attachment]:
    """Attachment list derived from what is on disk (file, or the folder's files)."""
    if scan_entry.is_document_folder:
        return describe_files(list_folder_files(scan_entry.path))
    return [attachment_from_file(scan_entry.path, is_original_file=True)]


def resolve_entry(
    scan_entry: ScanEntry,
    registry: StatusRegistry,
    tracker: Optional[AvailabilityTracker] = None,
) -> CatalogEntry:
    """Build the catalog entry for one scan candidate. Never writes to disk."""
    sidecar_path = sidecar_path_for(scan_entry.path)
    record = load_sidecar(sidecar_path)

    if record is not None:
        registry.discover(record.status)
        if record.is_legacy:
            # Migrated in memory only; the next save persists the list
            record = replace(record, attachments=synthesize_attachments(scan_entry))
    else:
        logger.debug(f"No usable sidecar for {scan_entry.path.name}, using defaults")
        record = Sidecar(
            name=_display_name(scan_entry),
            amount=None,
            notes="",
            status=registry.default,
            year=scan_entry.year,
            created_at=utc_now(),
            attachments=synthesize_attachments(scan_entry),
        )

    entry = CatalogEntry(
        path=scan_entry.path,
        sidecar_path=sidecar_path,
        record=record,
        year=scan_entry.year,
        is_document_folder=scan_entry.is_document_folder,
    )
    if tracker is not None:
        entry.is_downloading = any(not tracker.is_local(p) for p in entry.attachment_paths)
    return entry


def reconcile(
    root: str | Path,
    registry: StatusRegistry,
    tracker: Optional[AvailabilityTracker] = None,
    generation: int = 0,
) -> Catalog:
    """Run one full reconciliation pass over root."""
    entries = []
    for scan_entry in scan_root(root):
        try:
            entries.append(resolve_entry(scan_entry, registry, tracker))
        except (OSError, TaxBoxError) as e:
            logger.warning(f"Skipping {scan_entry.path}: {e}")

    catalog = Catalog.build(entries, generation)
    logger.debug(f"Reconciled {len(catalog)} documents in {len(catalog.years)} years (generation {generation})")
    return catalog


# ==============================================================================
# BACKGROUND RECONCILER
# ==============================================================================

class Reconciler:
    """Runs reconciliation passes off the calling thread.

    Every pass gets a generation number when it starts. A pass that finishes
    after a newer generation was published is dropped instead of published.
    """

    def __init__(
        self,
        root: str | Path,
        registry: StatusRegistry,
        tracker: Optional[AvailabilityTracker] = None,
        publish: Optional[Callable[[Catalog], None]] = None,
        max_workers: int = 2,
    ):
        self.root = Path(root)
        self.registry = registry
        self.tracker = tracker
        self._publish = publish
        self._lock = threading.Lock()
        self._next_generation = 0
        self._published_generation = 0
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="taxbox-scan")

    @property
    def published_generation(self) -> int:
        with self._lock:
            return self._published_generation

    def _claim_generation(self) -> int:
        with self._lock:
            self._next_generation += 1
            return self._next_generation

    def mark_local_change(self) -> int:
        """Claim a generation for an in-place catalog edit.

        Passes that started before the edit can no longer be published over it.
        """
        with self._lock:
            self._next_generation += 1
            self._published_generation = self._next_generation
            return self._next_generation

    def _run_pass(self, generation: int, root: Path) -> Catalog:
        catalog = reconcile(root, self.registry, self.tracker, generation)
        with self._lock:
            if generation <= self._published_generation:
                logger.debug(f"Discarding stale pass {generation} (have {self._published_generation})")
                return catalog
            self._published_generation = generation
            if self._publish is not None:
                self._publish(catalog)
        return catalog

    def submit(self) -> "Future[Catalog]":
        generation = self._claim_generation()
        return self._executor.submit(self._run_pass, generation, self.root)

    def run(self) -> Catalog:
        """Run a pass and wait for it."""
        return self.submit().result()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
