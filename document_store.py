#!/usr/bin/env python3
"""
Document store: owns the live catalog and performs every structural mutation.

All mutations check the storage access capability first, put their effects on
disk before returning, and then either patch the catalog in place (update,
delete, attachment removal) or run a reconciliation pass (import, placeholder
creation, root change).

Usage:
    store = DocumentStore(context, registry)
    store.reload()
    result = store.import_files([Path("~/Downloads/w2.pdf").expanduser()])
    for entry in store.filtered_items():
        print(entry.record.name, entry.record.status)
"""

import logging
import shutil
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterable, Optional

from access import StorageAccess
from attachments import (
    PLACEHOLDER_SUFFIX,
    CatalogEntry,
    attachment_from_file,
    claim_destination,
    demote_to_file,
    folder_name_for,
    place_file,
    promote_to_folder,
)
from availability import DEFAULT_TIMEOUT, AvailabilityTracker
from catalog import Catalog, Reconciler
from errors import (
    FileUnavailableError,
    NoFileAttachedError,
    PermissionDeniedError,
    RecordNotFoundError,
    StatusRegistryError,
    StorageIOError,
    storage_error,
)
from sidecar import (
    Attachment,
    DraftMeta,
    Sidecar,
    check_amount,
    save_sidecar,
    sidecar_path_for,
    utc_now,
)
from status_registry import StatusRegistry

logger = logging.getLogger("taxbox.store")


# ==============================================================================
# CONTEXT AND RESULTS
# ==============================================================================

@dataclass
class AppContext:
    """Everything the store needs from the application, injected at construction."""

    root: Path
    copy_on_import: bool = True
    download_timeout: float = DEFAULT_TIMEOUT
    selected_year: Optional[int] = None
    status_filter: Optional[str] = None
    query: str = ""


@dataclass
class ImportResult:
    """Outcome of one import call."""

    entry_path: Optional[Path] = None
    imported: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)
    skipped: list[Path] = field(default_factory=list)
    permission_denied: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.imported) and not self.failed and not self.permission_denied


@dataclass
class BatchResult:
    succeeded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


# ==============================================================================
# STORE
# ==============================================================================

class DocumentStore:
    """Single owner of the catalog for one storage root."""

    def __init__(
        self,
        context: AppContext,
        registry: StatusRegistry,
        tracker: Optional[AvailabilityTracker] = None,
        access: Optional[StorageAccess] = None,
        on_root_changed: Optional[Callable[[Path], None]] = None,
        max_workers: int = 4,
    ):
        self.context = context
        self.context.root = Path(context.root)
        self.registry = registry
        self.tracker = tracker or AvailabilityTracker()
        self.access = access or StorageAccess(self.context.root)
        self.on_root_changed = on_root_changed

        self._lock = threading.RLock()
        self._catalog = Catalog()
        self._reconciler = Reconciler(self.context.root, registry, self.tracker, publish=self._publish)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="taxbox-store")
        self.tracker.add_listener(self._on_availability_changed)

    # ------------------------------------------------------------------ catalog

    @property
    def catalog(self) -> Catalog:
        with self._lock:
            return self._catalog

    @property
    def years(self) -> tuple[int, ...]:
        return self.catalog.years

    def get(self, entry_id: str) -> CatalogEntry:
        return self.catalog.get(entry_id)

    def _sync_selected_year(self) -> None:
        years = self._catalog.years
        if years and self.context.selected_year not in years:
            self.context.selected_year = years[0]

    def _publish(self, catalog: Catalog) -> None:
        with self._lock:
            self._catalog = catalog.carry_ids(self._catalog)
            self._sync_selected_year()

    def _apply(self, transform: Callable[[Catalog], Catalog]) -> None:
        """Patch the catalog in place for a mutation that is already on disk."""
        generation = self._reconciler.mark_local_change()
        with self._lock:
            self._catalog = transform(self._catalog).with_generation(generation)
            self._sync_selected_year()

    def _replace_entry(self, old: CatalogEntry, new: CatalogEntry) -> CatalogEntry:
        current = self.catalog.locate(old)
        if current is not None and current.id != new.id:
            new = replace(new, id=current.id)
        self._apply(lambda c: c.replace(new))
        return new

    def reload(self) -> Catalog:
        """Run a reconciliation pass and wait for it."""
        self._reconciler.run()
        self._request_downloads()
        return self.catalog

    def reload_async(self) -> "Future[Catalog]":
        future = self._reconciler.submit()
        future.add_done_callback(self._after_pass)
        return future

    def _after_pass(self, future: Future) -> None:
        if future.exception() is None:
            self._request_downloads()

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run a store operation on the worker pool."""
        return self._executor.submit(fn, *args, **kwargs)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._reconciler.shutdown()

    def filtered_items(self) -> list[CatalogEntry]:
        ctx = self.context
        return self.catalog.filtered(ctx.selected_year, ctx.status_filter, ctx.query)

    def total_amount(self) -> Decimal:
        ctx = self.context
        return self.catalog.total_amount(ctx.selected_year, ctx.status_filter, ctx.query)

    # ------------------------------------------------------------- availability

    def _request_downloads(self) -> None:
        for entry in self.catalog.entries:
            if not entry.is_downloading:
                continue
            for path in entry.attachment_paths:
                if not self.tracker.is_local(path):
                    self._executor.submit(self.tracker.trigger_download, path)

    def _on_availability_changed(self, path: Path, is_downloading: bool) -> None:
        with self._lock:
            entry = next((e for e in self._catalog.entries if path in e.attachment_paths), None)
        if entry is None:
            return
        if not is_downloading:
            is_downloading = any(
                self.tracker.is_downloading(p) for p in entry.attachment_paths if p != path
            )
        # Transient flag only; the next pass recomputes it, so no new generation
        with self._lock:
            current = self._catalog.find(entry.id)
            # Deleted or moved since the lookup
            if current is None or current.path != entry.path:
                return
            if current.is_downloading == is_downloading:
                return
            progress = current.download_progress if is_downloading else 1.0
            updated = replace(current, is_downloading=is_downloading, download_progress=progress)
            self._catalog = self._catalog.replace(updated)

    # ------------------------------------------------------------------ helpers

    def _failure(self, exc: OSError, path: Path, operation: str) -> StorageIOError:
        """Wrap an OSError; permission failures pause the access capability."""
        error = storage_error(exc, path, operation)
        if isinstance(error, PermissionDeniedError):
            self.access.pause_for(error)
        logger.error(str(error))
        return error

    def _year_dir(self, year: int) -> Path:
        year_dir = self.context.root / str(year)
        try:
            year_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise self._failure(e, year_dir, "create year folder") from e
        return year_dir

    def _status_for(self, draft: DraftMeta) -> str:
        return (draft.status or "").strip() or self.registry.default

    def _save(self, record: Sidecar, path: Path) -> None:
        try:
            save_sidecar(record, path)
        except OSError as e:
            raise self._failure(e, path, "write sidecar") from e

    def _transfer_batch(
        self, sources: list[Path], directory: Path, result: ImportResult
    ) -> list[tuple[Path, Path]]:
        """Copy or move each source into directory; returns (source, dest) pairs that made it."""
        placed = []
        for i, source in enumerate(sources):
            dest = None
            try:
                dest = claim_destination(directory, source.name)
                place_file(source, dest, self.context.copy_on_import)
            except OSError as e:
                if dest is not None:
                    dest.unlink(missing_ok=True)
                error = self._failure(e, source, "import")
                result.failed.append((source, str(error)))
                if isinstance(error, PermissionDeniedError):
                    result.permission_denied = True
                    result.skipped.extend(sources[i + 1:])
                    break
                continue
            placed.append((source, dest))
            result.imported.append(source)
        return placed

    @staticmethod
    def _describe(placed: list[tuple[Path, Path]], first_is_original: bool) -> list[Attachment]:
        now = utc_now()
        return [
            attachment_from_file(
                dest,
                is_original_file=first_is_original and i == 0,
                original_filename=source.name,
                date_added=now,
            )
            for i, (source, dest) in enumerate(placed)
        ]

    # ------------------------------------------------------------------- import

    def import_files(
        self,
        paths: Iterable[str | Path],
        draft: Optional[DraftMeta] = None,
        target: Optional[CatalogEntry] = None,
    ) -> ImportResult:
        """Import files as a new record, or add them to an existing one.

        Args:
            paths: files to import
            draft: metadata for the new record (prefilled from the files if None)
            target: existing record to append the files to

        Returns:
            ImportResult listing what was imported, what failed, and whether
            access was lost part way through

        Raises:
            InvalidAmountError: the draft amount is not a finite number
        """
        paths = [Path(p).expanduser() for p in paths]
        result = ImportResult()
        if not paths:
            return result

        if draft is None:
            draft = DraftMeta.from_paths(paths, self.registry.default)
        check_amount(draft.amount)

        try:
            self.access.require()
        except PermissionDeniedError:
            result.permission_denied = True
            result.skipped = list(paths)
            return result

        try:
            if target is not None and target.is_placeholder:
                self._fill_placeholder(paths, target, result)
            elif target is not None:
                self._add_to_existing(paths, target, result)
            else:
                directory = self._year_dir(draft.year)
                if len(paths) == 1:
                    self._import_single(paths[0], draft, directory, result)
                else:
                    self._import_multi(paths, draft, directory, result)
        except StorageIOError as e:
            done = {p for p, _ in result.failed} | set(result.imported)
            result.failed.extend((p, str(e)) for p in paths if p not in done)
            result.permission_denied = result.permission_denied or isinstance(e, PermissionDeniedError)

        if result.imported or target is not None:
            self.reload()
        if result.imported:
            logger.info(f"Imported {len(result.imported)} file(s) into {result.entry_path}")
        return result

    def _import_single(
        self,
        source: Path,
        draft: DraftMeta,
        directory: Path,
        result: ImportResult,
        created_at: Optional[datetime] = None,
    ) -> None:
        placed = self._transfer_batch([source], directory, result)
        if not placed:
            return
        dest = placed[0][1]
        record = Sidecar.from_draft(
            replace(draft, status=self._status_for(draft)),
            attachments=self._describe(placed, first_is_original=True),
            source_path=str(source),
        )
        if created_at is not None:
            record = replace(record, created_at=created_at)
        result.entry_path = dest
        self._save(record, sidecar_path_for(dest))

    def _import_multi(
        self,
        sources: list[Path],
        draft: DraftMeta,
        directory: Path,
        result: ImportResult,
        created_at: Optional[datetime] = None,
    ) -> None:
        try:
            folder = claim_destination(directory, folder_name_for(draft.name), is_dir=True)
        except OSError as e:
            raise self._failure(e, directory, "create document folder") from e

        placed = self._transfer_batch(sources, folder, result)
        if not placed:
            try:
                folder.rmdir()
            except OSError as e:
                logger.warning(f"Could not remove empty folder {folder}: {e}")
            return

        record = Sidecar.from_draft(
            replace(draft, status=self._status_for(draft)),
            attachments=self._describe(placed, first_is_original=True),
            source_path=str(placed[0][0]),
        )
        if created_at is not None:
            record = replace(record, created_at=created_at)
        result.entry_path = folder
        self._save(record, sidecar_path_for(folder))

    def _add_to_existing(self, sources: list[Path], target: CatalogEntry, result: ImportResult) -> None:
        entry = target
        if not target.is_document_folder:
            try:
                entry = promote_to_folder(target)
            except PermissionDeniedError as e:
                self.access.pause_for(e)
                raise
        result.entry_path = entry.path

        placed = self._transfer_batch(sources, entry.path, result)
        if not placed:
            return
        record = replace(
            entry.record,
            attachments=[*entry.attachments, *self._describe(placed, first_is_original=False)],
        )
        self._save(record, entry.sidecar_path)

    def _fill_placeholder(self, sources: list[Path], target: CatalogEntry, result: ImportResult) -> None:
        """Turn a placeholder into a real record that keeps the placeholder's metadata."""
        meta = target.record
        draft = DraftMeta(name=meta.name, amount=meta.amount, notes=meta.notes, status=meta.status, year=meta.year)
        directory = target.path.parent
        if len(sources) == 1:
            self._import_single(sources[0], draft, directory, result, created_at=meta.created_at)
        else:
            self._import_multi(sources, draft, directory, result, created_at=meta.created_at)

        if result.entry_path is None:
            return
        for path in (target.path, target.sidecar_path):
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove placeholder {path.name}: {e}")

    # ------------------------------------------------------------- placeholders

    def _write_placeholder(self, draft: DraftMeta) -> Path:
        directory = self._year_dir(draft.year)
        name = folder_name_for(draft.name) + PLACEHOLDER_SUFFIX
        try:
            dest = claim_destination(directory, name)
        except OSError as e:
            raise self._failure(e, directory / name, "create placeholder") from e

        record = Sidecar.from_draft(
            replace(draft, status=self._status_for(draft)),
            attachments=[attachment_from_file(dest, is_original_file=True, date_added=utc_now())],
        )
        try:
            self._save(record, sidecar_path_for(dest))
        except StorageIOError:
            dest.unlink(missing_ok=True)
            raise
        return dest

    def create_placeholder(self, draft: DraftMeta) -> Optional[CatalogEntry]:
        """Create a record with no content yet (a zero-byte ``.placeholder`` file)."""
        self.access.require()
        path = self._write_placeholder(draft)
        logger.info(f"Created placeholder {path.name}")
        return self.reload().find_by_path(path)

    def create_bulk_placeholders(self, drafts: Iterable[DraftMeta]) -> BatchResult:
        """Create many placeholders with one access check and one reconciliation pass."""
        drafts = list(drafts)
        result = BatchResult()
        self.access.require()
        for i, draft in enumerate(drafts):
            try:
                self._write_placeholder(draft)
                result.succeeded += 1
            except StorageIOError as e:
                result.failed += 1
                result.errors.append(f"{draft.name}: {e}")
                if isinstance(e, PermissionDeniedError):
                    remaining = len(drafts) - i - 1
                    result.failed += remaining
                    break
        if result.succeeded:
            self.reload()
        logger.info(f"Created {result.succeeded} placeholder(s), {result.failed} failed")
        return result

    # ---------------------------------------------------------------- mutations

    def update(self, entry: CatalogEntry) -> CatalogEntry:
        """Save an edited record. Only the sidecar is rewritten; files stay where they are."""
        check_amount(entry.record.amount)
        self.access.require()
        self._save(entry.record, entry.sidecar_path)
        self.registry.discover(entry.record.status)
        return self._replace_entry(entry, entry)

    def delete(self, entry: CatalogEntry) -> None:
        """Delete a record: its file or folder, then its sidecar.

        Raises:
            StorageIOError: the file or folder could not be removed
            PermissionDeniedError: access was refused (mutations are paused)
        """
        self.access.require()
        try:
            if entry.is_document_folder:
                shutil.rmtree(entry.path)
            else:
                entry.path.unlink()
        except FileNotFoundError:
            logger.debug(f"{entry.path} already gone")
        except OSError as e:
            raise self._failure(e, entry.path, "delete") from e

        try:
            entry.sidecar_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove sidecar {entry.sidecar_path.name}: {e}")

        current = self.catalog.locate(entry)
        drop = {entry.id} | ({current.id} if current else set())
        self._apply(lambda c: c.without(drop))
        logger.info(f"Deleted {entry.filename}")

    def delete_many(self, entries: Iterable[CatalogEntry]) -> BatchResult:
        result = BatchResult()
        for entry in entries:
            try:
                self.delete(entry)
                result.succeeded += 1
            except StorageIOError as e:
                result.failed += 1
                result.errors.append(f"{entry.filename}: {e}")
        return result

    def remove_attachment(self, attachment: Attachment, entry: CatalogEntry) -> Optional[CatalogEntry]:
        """Remove one attachment from a record.

        Removing the last attachment deletes the record (returns None). Leaving
        exactly one collapses the document folder back to a single file.
        """
        self.access.require()
        remaining = [a for a in entry.attachments if a.filename != attachment.filename]
        if len(remaining) == len(entry.attachments):
            raise RecordNotFoundError(f"{attachment.filename} is not attached to {entry.record.name}")

        if not remaining:
            self.delete(entry)
            return None

        if len(remaining) == 1 and entry.is_document_folder:
            try:
                updated = demote_to_file(entry, remaining[0])
            except StorageIOError as e:
                if isinstance(e, PermissionDeniedError):
                    self.access.pause_for(e)
                raise
        else:
            removed = entry.path / attachment.filename
            try:
                removed.unlink(missing_ok=True)
            except OSError as e:
                raise self._failure(e, removed, "remove attachment") from e
            record = replace(entry.record, attachments=remaining)
            self._save(record, entry.sidecar_path)
            updated = entry.with_record(record)

        logger.info(f"Removed {attachment.filename} from {entry.record.name}")
        return self._replace_entry(entry, updated)

    def remove_status(self, name: str) -> int:
        """Move a status's documents to the next default, then remove the status.

        Returns how many documents moved. The registry keeps the status until
        every document on it has been saved under the new default.

        Raises:
            StatusRegistryError: name is the last remaining status
            PermissionDeniedError: access was refused (nothing is changed)
        """
        remaining = [s for s in self.registry.statuses if s != name]
        if not remaining:
            raise StatusRegistryError("Cannot remove the last status")
        self.access.require()

        default = remaining[0]
        moved = 0
        for entry in self.catalog.entries:
            if entry.record.status != name:
                continue
            self.update(entry.with_record(replace(entry.record, status=default)))
            moved += 1
        self.registry.remove(name)
        if moved:
            logger.info(f"Moved {moved} document(s) from '{name}' to '{default}'")
        return moved

    # ---------------------------------------------------------------- open/root

    def open_entry(self, entry: CatalogEntry, timeout: Optional[float] = None) -> list[Path]:
        """Make every attachment local and return the paths to open.

        Raises:
            NoFileAttachedError: the record is a placeholder
            FileUnavailableError: a file did not download within the timeout
        """
        if entry.is_placeholder or not entry.attachment_paths:
            raise NoFileAttachedError(f"'{entry.record.name}' has no file attached")
        timeout = self.context.download_timeout if timeout is None else timeout
        paths = entry.attachment_paths
        for path in paths:
            if not self.tracker.ensure_available(path, timeout):
                raise FileUnavailableError(path, timeout)
        return paths

    def set_root(self, root: str | Path) -> Catalog:
        """Switch to another storage root, persist the choice and rescan."""
        root = Path(root).expanduser()
        self.context.root = root
        self.context.selected_year = None
        self._reconciler.root = root
        self.access.restore(root)
        if self.on_root_changed is not None:
            self.on_root_changed(root)
        logger.info(f"Storage root set to {root}")
        return self.reload()
