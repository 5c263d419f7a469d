#!/usr/bin/env python3
"""
Directory scanner for the storage tree.

Walks ``<root>/<year>/`` two levels deep and reports candidate documents.
Read-only: it never creates, moves or deletes anything.
"""

import logging
import os
from pathlib import Path
from typing import Iterator, NamedTuple

from sidecar import is_sidecar_name

logger = logging.getLogger("taxbox.scanner")


class ScanEntry(NamedTuple):
    year: int
    path: Path
    is_document_folder: bool


def _is_year_name(name: str) -> bool:
    return name.isascii() and name.isdigit()


def _is_skipped(name: str) -> bool:
    return name.startswith(".") or is_sidecar_name(name)


def _sorted_entries(path: Path) -> list[os.DirEntry]:
    with os.scandir(path) as it:
        return sorted(it, key=lambda e: e.name)


def scan_root(root: str | Path) -> Iterator[ScanEntry]:
    """Yield every document candidate under root.

    Year partitions are the all-digit directories directly under root. Inside a
    partition each directory is a document folder and each regular file a
    standalone document. Unreadable subtrees are logged and skipped.
    """
    root = Path(root)
    try:
        years = [e for e in _sorted_entries(root) if _is_year_name(e.name) and e.is_dir()]
    except FileNotFoundError:
        logger.debug(f"Storage root {root} does not exist")
        return
    except OSError as e:
        logger.warning(f"Cannot list storage root {root}: {e}")
        return

    for year_entry in years:
        try:
            children = _sorted_entries(Path(year_entry.path))
        except OSError as e:
            logger.warning(f"Skipping year {year_entry.name}: {e}")
            continue

        year = int(year_entry.name)
        for child in children:
            if _is_skipped(child.name):
                continue
            try:
                if child.is_dir():
                    yield ScanEntry(year, Path(child.path), True)
                elif child.is_file():
                    yield ScanEntry(year, Path(child.path), False)
            except OSError as e:
                logger.warning(f"Skipping {child.path}: {e}")


def list_folder_files(folder: str | Path) -> list[Path]:
    """Direct files of a document folder (no hidden files, no sidecars), sorted."""
    folder = Path(folder)
    try:
        entries = _sorted_entries(folder)
    except OSError as e:
        logger.warning(f"Cannot list document folder {folder}: {e}")
        return []
    return [Path(e.path) for e in entries if not _is_skipped(e.name) and e.is_file()]
