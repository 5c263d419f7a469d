#!/usr/bin/env python3
"""
Catalog entries and the on-disk primitives for the attachment model.

A record lives either as a single file (``2024/w2.pdf``) or as a document
folder holding several files (``2024/W-2/``). Both have the sidecar next to
them. This module holds the naming rule for new destinations and the two
structural moves between the layouts:

- promote_to_folder: single file -> document folder
- demote_to_file:    document folder with one survivor -> single file
"""

import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from itertools import count
from pathlib import Path
from typing import Optional

from errors import storage_error
from sidecar import Attachment, Sidecar, save_sidecar, sidecar_path_for

logger = logging.getLogger("taxbox.attachments")

PLACEHOLDER_SUFFIX = ".placeholder"
DEFAULT_FOLDER_NAME = "Document"

# Characters that cannot appear in a file name on one of the platforms we sync with
_REPLACED_CHARS = "/:\\|"
_REMOVED_CHARS = '?<>*"'

# UTF-8 bytes left for a name, so a -N suffix and ".meta.json" still fit in 255
MAX_NAME_BYTES = 200


# ==============================================================================
# CATALOG ENTRY
# ==============================================================================

@dataclass
class CatalogEntry:
    """A record plus where it lives. Derived on every scan, never persisted."""

    path: Path
    sidecar_path: Path
    record: Sidecar
    year: int
    is_document_folder: bool = False
    is_downloading: bool = False
    download_progress: float = 0.0
    id: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def is_multi_file(self) -> bool:
        return self.is_document_folder

    @property
    def is_placeholder(self) -> bool:
        return not self.is_document_folder and self.path.name.endswith(PLACEHOLDER_SUFFIX)

    @property
    def attachments(self) -> list[Attachment]:
        return self.record.attachments or []

    @property
    def attachment_count(self) -> int:
        if self.is_document_folder:
            return len(self.attachments)
        return 1

    @property
    def attachment_paths(self) -> list[Path]:
        if self.is_document_folder:
            return [self.path / a.filename for a in self.attachments]
        return [self.path]

    @property
    def primary_attachment_path(self) -> Optional[Path]:
        """The original file of the record (first attachment if none is flagged)."""
        if not self.is_document_folder:
            return self.path
        attachments = self.attachments
        if not attachments:
            return None
        primary = next((a for a in attachments if a.is_original_file), attachments[0])
        return self.path / primary.filename

    def with_record(self, record: Sidecar) -> "CatalogEntry":
        """Copy of this entry carrying a new record (same id, same location)."""
        return replace(self, record=record)


# ==============================================================================
# NAMING
# ==============================================================================

def _truncate_utf8(text: str, limit: int) -> str:
    return text.encode("utf-8")[:limit].decode("utf-8", "ignore").rstrip()


def sanitize_filename(name: str) -> str:
    """Make a display name safe to use as a file or folder name.

    Path separators and ':' '|' become '-', the characters ? < > * " are
    dropped. Leading dots are stripped so the result never becomes a hidden
    entry the scanner would skip. The result is cut to MAX_NAME_BYTES.
    """
    for ch in _REPLACED_CHARS:
        name = name.replace(ch, "-")
    for ch in _REMOVED_CHARS:
        name = name.replace(ch, "")
    name = name.strip().lstrip(".").strip()
    return _truncate_utf8(name, MAX_NAME_BYTES)


def folder_name_for(display_name: str) -> str:
    return sanitize_filename(display_name) or DEFAULT_FOLDER_NAME


def _split_name(name: str, is_dir: bool) -> tuple[str, str]:
    if is_dir:
        return name, ""
    p = Path(name)
    if not p.suffix:
        return name, ""
    return p.stem, p.suffix


def _fit_name(name: str, is_dir: bool) -> str:
    """Shorten the stem so the whole name stays within MAX_NAME_BYTES."""
    if len(name.encode("utf-8")) <= MAX_NAME_BYTES:
        return name
    stem, ext = _split_name(name, is_dir)
    ext_bytes = len(ext.encode("utf-8"))
    if ext_bytes > MAX_NAME_BYTES // 2:
        return _truncate_utf8(name, MAX_NAME_BYTES)
    return _truncate_utf8(stem, MAX_NAME_BYTES - ext_bytes) + ext


def _taken(candidate: Path) -> bool:
    # An orphaned sidecar also blocks the name; a new file would adopt its metadata
    return os.path.lexists(candidate) or os.path.lexists(sidecar_path_for(candidate))


def unique_destination(directory: str | Path, name: str, is_dir: bool = False) -> Path:
    """Find a free name in directory.

    receipt.pdf -> receipt-1.pdf -> receipt-2.pdf ... Directories and names
    without an extension get name-1, name-2 ...

    Names longer than MAX_NAME_BYTES are shortened first, keeping the extension.
    """
    directory = Path(directory)
    name = _fit_name(name, is_dir)
    candidate = directory / name
    if not _taken(candidate):
        return candidate

    stem, ext = _split_name(name, is_dir)
    for i in count(1):
        candidate = directory / f"{stem}-{i}{ext}"
        if not _taken(candidate):
            return candidate


def claim_destination(directory: str | Path, name: str, is_dir: bool = False) -> Path:
    """Pick a unique destination and reserve it on disk.

    Files are reserved with an exclusive create, folders with mkdir. If another
    writer grabs the name first the next candidate is tried.
    """
    directory = Path(directory)
    while True:
        candidate = unique_destination(directory, name, is_dir)
        try:
            if is_dir:
                candidate.mkdir()
            else:
                with open(candidate, "x"):
                    pass
            return candidate
        except FileExistsError:
            logger.debug(f"Lost race for {candidate.name}, retrying")


# ==============================================================================
# FILE PLACEMENT
# ==============================================================================

def attachment_from_file(
    path: Path,
    is_original_file: bool,
    original_filename: Optional[str] = None,
    date_added: Optional[datetime] = None,
) -> Attachment:
    """Describe a file on disk as an attachment.

    When no date is given the file's mtime is used, so describing the same
    file twice gives the same descriptor.
    """
    st = path.stat()
    if date_added is None:
        date_added = datetime.fromtimestamp(int(st.st_mtime), tz=timezone.utc)
    return Attachment(
        filename=path.name,
        original_filename=original_filename or path.name,
        file_size=st.st_size,
        date_added=date_added,
        is_original_file=is_original_file,
    )


def describe_files(paths: list[Path]) -> list[Attachment]:
    """Descriptors for a list of files, the first one flagged as original."""
    return [attachment_from_file(p, is_original_file=(i == 0)) for i, p in enumerate(paths)]


def place_file(source: Path, dest: Path, copy: bool) -> None:
    """Copy or move source onto dest (dest may be an empty reservation)."""
    if copy:
        shutil.copy2(source, dest)
    else:
        shutil.move(str(source), str(dest))


def _discard(path: Path) -> None:
    """Best-effort removal of a file or folder left over from a failed step."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not clean up {path}: {e}")


# ==============================================================================
# PROMOTION / DEMOTION
# ==============================================================================

def promote_to_folder(entry: CatalogEntry) -> CatalogEntry:
    """Turn a single-file record into a document folder.

    The folder is named after the record's display name and created next to
    the file. The file moves inside, the sidecar moves to ``<folder>.meta.json``
    and is rewritten with the attachment list.

    Raises:
        StorageIOError: the folder could not be created or the file moved
            (nothing is changed)
    """
    if entry.is_document_folder:
        return entry

    source = entry.path
    try:
        folder = claim_destination(source.parent, folder_name_for(entry.record.name), is_dir=True)
    except OSError as e:
        raise storage_error(e, source.parent, "create document folder") from e
    dest = folder / source.name
    try:
        shutil.move(str(source), str(dest))
    except OSError as e:
        _discard(folder)
        raise storage_error(e, source, "move") from e

    if entry.record.attachments:
        first, *rest = entry.record.attachments
        attachments = [replace(first, filename=dest.name), *rest]
    else:
        attachments = [attachment_from_file(dest, is_original_file=True)]
    record = replace(entry.record, attachments=attachments)

    new_sidecar = sidecar_path_for(folder)
    if entry.sidecar_path.exists():
        try:
            os.replace(entry.sidecar_path, new_sidecar)
        except OSError as e:
            logger.warning(f"Could not move sidecar {entry.sidecar_path.name}: {e}")

    try:
        save_sidecar(record, new_sidecar)
    except OSError as e:
        raise storage_error(e, new_sidecar, "write sidecar") from e
    if entry.sidecar_path.exists():
        _discard(entry.sidecar_path)

    logger.info(f"Promoted {source.name} to folder {folder.name}")
    return replace(entry, path=folder, sidecar_path=new_sidecar, record=record, is_document_folder=True)


def demote_to_file(entry: CatalogEntry, survivor: Attachment) -> CatalogEntry:
    """Collapse a document folder whose only remaining file is ``survivor``.

    The survivor moves to a unique name in the parent directory and gets a
    fresh sidecar as the record's original file. The folder (with whatever
    else is still in it) and the old sidecar are removed afterwards.

    Raises:
        StorageIOError: the survivor could not be moved or its sidecar written
    """
    folder = entry.path
    source = folder / survivor.filename
    try:
        dest = claim_destination(folder.parent, survivor.filename)
    except OSError as e:
        raise storage_error(e, folder.parent, "reserve file name") from e
    try:
        shutil.move(str(source), str(dest))
    except OSError as e:
        _discard(dest)
        raise storage_error(e, source, "move") from e

    attachment = replace(survivor, filename=dest.name, is_original_file=True)
    record = replace(entry.record, attachments=[attachment])
    new_sidecar = sidecar_path_for(dest)
    try:
        save_sidecar(record, new_sidecar)
    except OSError as e:
        raise storage_error(e, new_sidecar, "write sidecar") from e

    _discard(folder)
    _discard(entry.sidecar_path)

    logger.info(f"Collapsed folder {folder.name} to {dest.name}")
    return replace(entry, path=dest, sidecar_path=new_sidecar, record=record, is_document_folder=False)
