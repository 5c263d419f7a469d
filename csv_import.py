#!/usr/bin/env python3
"""
Bulk creation of placeholder records from a CSV file.

Expected columns (header names are case-insensitive, order does not matter,
any of them may be missing):

    name,year,status,amount,notes
    W-2 Acme Corp,2024,Todo,"$85,000.00",Employer copy
    1099-INT Bank,2024,,12.34,

Rows are validated one by one; a bad row never stops the others. The caller
decides what to do about names that already exist (see DuplicateHandling and
plan_import) and then hands the result to the document store.
"""

import csv
import io
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Iterable, Optional

from attachments import CatalogEntry
from sidecar import DraftMeta

logger = logging.getLogger("taxbox.csv")

COLUMNS = ("name", "year", "status", "amount", "notes")
MIN_YEAR = 1980
MAX_YEAR = 2100


@dataclass
class CSVImportRow:
    line_number: int
    name: str
    year: int
    status: str
    amount: Optional[Decimal]
    notes: str
    errors: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.errors:
            self.errors = self.validate()

    def validate(self) -> list[str]:
        errors = []
        if not self.name.strip():
            errors.append("Name is required")
        if self.year < MIN_YEAR or self.year > MAX_YEAR:
            errors.append(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")
        return errors

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_draft(self, name: Optional[str] = None) -> DraftMeta:
        return DraftMeta(
            name=name or self.name,
            amount=self.amount,
            notes=self.notes,
            status=self.status,
            year=self.year,
        )


@dataclass
class CSVImportResult:
    rows: list[CSVImportRow] = field(default_factory=list)
    duplicate_names: set[str] = field(default_factory=set)

    @property
    def valid_rows(self) -> list[CSVImportRow]:
        return [r for r in self.rows if r.is_valid]

    @property
    def invalid_rows(self) -> list[CSVImportRow]:
        return [r for r in self.rows if not r.is_valid]

    @property
    def total_rows(self) -> int:
        return len(self.rows)

    def is_duplicate(self, row: CSVImportRow) -> bool:
        return row.name.lower() in self.duplicate_names

    def with_existing(self, names: Iterable[str]) -> "CSVImportResult":
        """Mark valid rows whose name (case-insensitive) already exists."""
        existing = {n.lower() for n in names}
        duplicates = {r.name.lower() for r in self.valid_rows if r.name.lower() in existing}
        return replace(self, duplicate_names=duplicates)


class DuplicateHandling(Enum):
    SKIP = "skip"
    UPDATE = "update"
    CREATE_NEW = "create_new"


# ==============================================================================
# PARSING
# ==============================================================================

def _parse_year(text: str, default_year: int) -> int:
    try:
        year = int(text.strip())
    except ValueError:
        return default_year
    return year if year > 0 else default_year


def _parse_amount(text: str) -> Optional[Decimal]:
    cleaned = text.strip().replace("$", "").replace(",", "")
    if not cleaned:
        return None
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def parse_csv(data: str | bytes, default_year: int, default_status: str) -> CSVImportResult:
    """Parse CSV text into validated rows.

    Args:
        data: CSV contents (bytes are decoded as UTF-8, a BOM is tolerated)
        default_year: used when a row has no usable year
        default_status: used when a row has no status

    Returns:
        CSVImportResult with every row, valid or not
    """
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            logger.warning(f"CSV is not valid UTF-8: {e}")
            return CSVImportResult()
    data = data.lstrip("\ufeff")

    records = [r for r in csv.reader(io.StringIO(data)) if any(v.strip() for v in r)]
    if not records:
        return CSVImportResult()

    headers = [h.strip().lower() for h in records[0]]
    index = {col: headers.index(col) for col in COLUMNS if col in headers}

    def value(values: list[str], col: str) -> Optional[str]:
        i = index.get(col)
        if i is None or i >= len(values):
            return None
        return values[i]

    rows = []
    for n, values in enumerate(records[1:]):
        status = (value(values, "status") or "").strip() or default_status
        rows.append(
            CSVImportRow(
                line_number=n + 2,  # 1-based, header is line 1
                name=(value(values, "name") or "").strip(),
                year=_parse_year(value(values, "year") or "", default_year),
                status=status,
                amount=_parse_amount(value(values, "amount") or ""),
                notes=(value(values, "notes") or "").strip(),
            )
        )

    logger.debug(f"Parsed {len(rows)} CSV rows")
    return CSVImportResult(rows=rows)


# ==============================================================================
# PLANNING
# ==============================================================================

def plan_import(
    result: CSVImportResult,
    entries: Iterable[CatalogEntry],
    handling: DuplicateHandling = DuplicateHandling.SKIP,
) -> tuple[list[DraftMeta], list[CatalogEntry]]:
    """Decide what to create and what to update for the valid rows.

    Returns:
        (drafts_to_create, entries_to_update)
    """
    entries = list(entries)
    taken = {e.record.name.lower() for e in entries}
    result = result.with_existing(e.record.name for e in entries)

    drafts: list[DraftMeta] = []
    updates: list[CatalogEntry] = []

    for row in result.valid_rows:
        if not result.is_duplicate(row):
            drafts.append(row.to_draft())
            continue

        if handling is DuplicateHandling.SKIP:
            continue

        if handling is DuplicateHandling.UPDATE:
            existing = next(e for e in entries if e.record.name.lower() == row.name.lower())
            record = replace(
                existing.record,
                status=row.status,
                amount=row.amount,
                notes=row.notes,
                year=row.year,
            )
            updates.append(existing.with_record(record))
            continue

        suffix = 1
        while f"{row.name} ({suffix})".lower() in taken:
            suffix += 1
        name = f"{row.name} ({suffix})"
        taken.add(name.lower())
        drafts.append(row.to_draft(name))

    return drafts, updates
