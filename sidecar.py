#!/usr/bin/env python3
"""
Sidecar records and their on-disk JSON codec.

Every document in the storage tree has a companion ``<entry>.meta.json`` file
holding the user-entered fields:

    {
      "amount": 1250.5,
      "attachments": [{"dateAdded": "...", "fileSize": 1024, "filename": "w2.pdf",
                       "isOriginalFile": true, "originalFilename": "w2.pdf"}],
      "createdAt": "2024-02-01T10:00:00Z",
      "name": "W-2",
      "notes": "",
      "sourcePath": "/Users/me/Downloads/w2.pdf",
      "status": "Todo",
      "year": 2024
    }

Encoding is deterministic (sorted keys, fixed timestamp format) so saving an
unchanged record produces byte-identical output. Unknown keys are ignored on
decode. A record without ``attachments`` is a legacy single-file record.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import simplejson

from errors import InvalidAmountError, SidecarDecodeError

logger = logging.getLogger("taxbox.sidecar")

SIDECAR_SUFFIX = ".meta.json"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# ==============================================================================
# TIMESTAMPS
# ==============================================================================

def utc_now() -> datetime:
    """Current time in UTC, truncated to the precision the codec stores."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(text: Any) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime (second precision)."""
    if not isinstance(text, str):
        raise SidecarDecodeError(f"Timestamp must be a string, got {type(text).__name__}")
    raw = text.strip()
    if raw[-1:] in ("Z", "z"):
        raw = raw[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(raw)
    except ValueError as e:
        raise SidecarDecodeError(f"Invalid timestamp: {text!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0)


# ==============================================================================
# AMOUNTS
# ==============================================================================

def check_amount(amount: Optional[Decimal]) -> Optional[Decimal]:
    """Validate an amount before it reaches a record.

    Raises:
        InvalidAmountError: amount is not a finite Decimal
    """
    if amount is None:
        return None
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise InvalidAmountError(f"Invalid amount: {amount!r}")
    return amount


# ==============================================================================
# RECORD TYPES
# ==============================================================================

@dataclass
class Attachment:
    """One physical file belonging to a record."""

    filename: str
    original_filename: str
    file_size: int
    date_added: datetime
    is_original_file: bool

    def to_dict(self) -> dict:
        return {
            "filename": self.filename,
            "originalFilename": self.original_filename,
            "fileSize": self.file_size,
            "dateAdded": format_timestamp(self.date_added),
            "isOriginalFile": self.is_original_file,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Attachment":
        if not isinstance(data, dict):
            raise SidecarDecodeError("Attachment must be an object")
        return cls(
            filename=_require(data, "filename", str),
            original_filename=_require(data, "originalFilename", str),
            file_size=_require(data, "fileSize", int),
            date_added=parse_timestamp(_require(data, "dateAdded", str)),
            is_original_file=_require(data, "isOriginalFile", bool),
        )


@dataclass
class Sidecar:
    """The metadata record for one logical document."""

    name: str
    amount: Optional[Decimal]
    notes: str
    status: str
    year: int
    created_at: datetime
    source_path: Optional[str] = None
    attachments: Optional[list[Attachment]] = None

    def __post_init__(self):
        self.amount = check_amount(self.amount)

    @property
    def is_legacy(self) -> bool:
        """True when the record predates multi-file support (no attachment list)."""
        return self.attachments is None

    @property
    def is_multi_file(self) -> bool:
        return len(self.attachments or []) > 1

    @classmethod
    def from_draft(
        cls,
        draft: "DraftMeta",
        attachments: Optional[list[Attachment]] = None,
        source_path: Optional[str] = None,
    ) -> "Sidecar":
        """Create a fresh record from draft metadata."""
        return cls(
            name=draft.name,
            amount=draft.amount,
            notes=draft.notes,
            status=draft.status,
            year=draft.year,
            created_at=utc_now(),
            source_path=source_path,
            attachments=attachments,
        )

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "notes": self.notes,
            "status": self.status,
            "year": self.year,
            "createdAt": format_timestamp(self.created_at),
        }
        # Optional fields are omitted when unset, the way existing stores write them
        if self.amount is not None:
            data["amount"] = _amount_to_json(self.amount)
        if self.source_path is not None:
            data["sourcePath"] = self.source_path
        if self.attachments is not None:
            data["attachments"] = [a.to_dict() for a in self.attachments]
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Sidecar":
        if not isinstance(data, dict):
            raise SidecarDecodeError("Sidecar payload must be a JSON object")

        attachments = data.get("attachments")
        if attachments is not None:
            if not isinstance(attachments, list):
                raise SidecarDecodeError("'attachments' must be a list")
            attachments = [Attachment.from_dict(a) for a in attachments]

        source_path = data.get("sourcePath")
        if source_path is not None and not isinstance(source_path, str):
            raise SidecarDecodeError("'sourcePath' must be a string")

        return cls(
            name=_require(data, "name", str),
            amount=_amount_from_json(data.get("amount")),
            notes=_require(data, "notes", str),
            status=_require(data, "status", str),
            year=_require(data, "year", int),
            created_at=parse_timestamp(_require(data, "createdAt", str)),
            source_path=source_path,
            attachments=attachments,
        )


@dataclass
class DraftMeta:
    """User-entered metadata for an import or placeholder, before a record exists."""

    name: str
    amount: Optional[Decimal] = None
    notes: str = ""
    status: str = ""
    year: int = field(default_factory=lambda: datetime.now().year)

    def __post_init__(self):
        self.amount = check_amount(self.amount)

    @classmethod
    def from_paths(cls, paths: list, default_status: str) -> "DraftMeta":
        """Prefill a draft from the files about to be imported."""
        name = Path(paths[0]).stem if paths else ""
        return cls(name=name, status=default_status)


def _require(data: dict, key: str, kind: type):
    if key not in data:
        raise SidecarDecodeError(f"Missing required field '{key}'")
    value = data[key]
    # bool is an int subclass; keep the two apart
    if kind is not bool and isinstance(value, bool):
        raise SidecarDecodeError(f"Field '{key}' has wrong type bool")
    if not isinstance(value, kind):
        raise SidecarDecodeError(f"Field '{key}' must be {kind.__name__}, got {type(value).__name__}")
    return value


def _amount_to_json(amount: Decimal) -> int | Decimal:
    amount = check_amount(amount)
    if amount == amount.to_integral_value():
        return int(amount)
    # Written as the exact decimal text, never through float
    return amount


def _amount_from_json(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise SidecarDecodeError(f"'amount' must be a number, got {type(value).__name__}")
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except InvalidOperation as e:
        raise SidecarDecodeError(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise SidecarDecodeError(f"Invalid amount: {value!r}")
    return amount


# ==============================================================================
# CODEC
# ==============================================================================

def encode(record: Sidecar) -> bytes:
    """Serialize a record to sidecar bytes."""
    text = simplejson.dumps(
        record.to_dict(), indent=2, sort_keys=True, ensure_ascii=False, use_decimal=True
    )
    return text.encode("utf-8")


def decode(data: bytes | str) -> Sidecar:
    """Deserialize sidecar bytes.

    Raises:
        SidecarDecodeError: payload is not valid UTF-8/JSON or does not match the schema
    """
    try:
        text = data.decode("utf-8") if isinstance(data, bytes) else data
        payload = simplejson.loads(text, use_decimal=True)
    except (UnicodeDecodeError, simplejson.JSONDecodeError) as e:
        raise SidecarDecodeError(f"Unreadable sidecar: {e}") from e
    return Sidecar.from_dict(payload)


# ==============================================================================
# FILE HELPERS
# ==============================================================================

def is_sidecar_name(name: str) -> bool:
    return name.endswith(SIDECAR_SUFFIX)


def sidecar_path_for(entry_path: str | Path) -> Path:
    """Get the sidecar path for a document file or document folder."""
    entry_path = Path(entry_path)
    return entry_path.with_name(entry_path.name + SIDECAR_SUFFIX)


def load_sidecar(path: str | Path) -> Sidecar | None:
    """Load a sidecar from disk.

    Returns None when the file is missing or cannot be decoded; callers fall
    back to synthesizing a default record either way.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Could not read sidecar {path}: {e}")
        return None

    try:
        return decode(data)
    except SidecarDecodeError as e:
        logger.warning(f"Ignoring damaged sidecar {path.name}: {e}")
        return None


def save_sidecar(record: Sidecar, path: str | Path) -> None:
    """Write a sidecar atomically (temp file in the same folder, then rename).

    Raises:
        OSError: the sidecar could not be written
    """
    path = Path(path)
    data = encode(record)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise
