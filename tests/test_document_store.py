"""
Tests for document store mutations: import, placeholders, update, delete,
attachment removal and the failure policies around them.
"""

import errno
from dataclasses import replace
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from access import StorageAccess
from availability import AvailabilityTracker, DownloadStatus
from document_store import AppContext, DocumentStore
from errors import (
    FileUnavailableError,
    InvalidAmountError,
    NoFileAttachedError,
    PermissionDeniedError,
    StatusRegistryError,
    StorageIOError,
)
from sidecar import DraftMeta, load_sidecar, sidecar_path_for


def draft(name: str = "W-2 Acme", year: int = 2024, **fields) -> DraftMeta:
    return DraftMeta(name=name, year=year, **fields)


class TestSingleImport:
    """Tests for importing one file."""

    def test_import_copies_file(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a single file lands in the year folder with a sidecar."""
        source = make_file(inbox_dir / "w2.pdf")

        result = store.import_files([source], draft(amount=Decimal("85000")))

        dest = root / "2024" / "w2.pdf"
        assert result.ok
        assert result.entry_path == dest
        assert dest.read_bytes() == source.read_bytes()
        assert source.exists()

        record = load_sidecar(sidecar_path_for(dest))
        assert record.name == "W-2 Acme"
        assert record.amount == Decimal("85000")
        assert record.source_path == str(source)
        assert len(record.attachments) == 1
        assert record.attachments[0].is_original_file
        assert record.attachments[0].file_size == source.stat().st_size

    def test_import_appears_in_catalog(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test reconciliation runs after an import."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft())
        assert store.years == (2024,)
        assert [e.record.name for e in store.catalog] == ["W-2 Acme"]
        assert store.context.selected_year == 2024

    def test_move_mode(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test files are moved when copy_on_import is off."""
        store.context.copy_on_import = False
        source = make_file(inbox_dir / "w2.pdf")
        store.import_files([source], draft())
        assert not source.exists()
        assert (root / "2024" / "w2.pdf").exists()

    def test_name_collisions(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test repeated imports get receipt-1.pdf, receipt-2.pdf."""
        source = make_file(inbox_dir / "receipt.pdf")
        for _ in range(3):
            store.import_files([source], draft("Receipt"))
        names = sorted(p.name for p in (root / "2024").iterdir() if not p.name.endswith(".meta.json"))
        assert names == ["receipt-1.pdf", "receipt-2.pdf", "receipt.pdf"]

    def test_default_draft(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test the draft is prefilled from the file when none is given."""
        store.import_files([make_file(inbox_dir / "receipt.pdf")])
        entry = store.catalog.entries[0]
        assert entry.record.name == "receipt"
        assert entry.record.status == "Todo"

    def test_missing_source_reported(self, store: DocumentStore, root: Path, inbox_dir: Path):
        """Test a missing file is reported and leaves nothing behind."""
        result = store.import_files([inbox_dir / "nope.pdf"], draft())
        assert not result.ok
        assert [p.name for p, _ in result.failed] == ["nope.pdf"]
        assert list((root / "2024").iterdir()) == []


    def test_long_source_name_shortened(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a file name with no room for the sidecar suffix is shortened, keeping the extension."""
        source = make_file(inbox_dir / ("r" * 250 + ".pdf"))

        result = store.import_files([source], draft())

        assert result.ok
        assert result.entry_path == root / "2024" / ("r" * 196 + ".pdf")
        assert load_sidecar(sidecar_path_for(result.entry_path)).attachments[0].original_filename == source.name

    def test_non_finite_amount_rejected_before_copy(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test an infinite amount fails before any file is placed."""
        bad = draft()
        bad.amount = Decimal("Infinity")

        with pytest.raises(InvalidAmountError):
            store.import_files([make_file(inbox_dir / "w2.pdf")], bad)

        assert not (root / "2024").exists()
        assert len(store.catalog) == 0


class TestMultiImport:
    """Tests for importing several files as one record."""

    def test_multi_file_import(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test files go into a folder named after the draft."""
        sources = [make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf", "c.pdf")]

        result = store.import_files(sources, draft("1099s: Bank/Broker"))

        folder = root / "2024" / "1099s- Bank-Broker"
        assert result.entry_path == folder
        assert sorted(p.name for p in folder.iterdir()) == ["a.pdf", "b.pdf", "c.pdf"]
        record = load_sidecar(sidecar_path_for(folder))
        assert [a.filename for a in record.attachments] == ["a.pdf", "b.pdf", "c.pdf"]
        assert [a.is_original_file for a in record.attachments] == [True, False, False]
        assert record.source_path == str(sources[0])

        entry = store.catalog.entries[0]
        assert entry.is_multi_file
        assert entry.attachment_count == 3

    def test_blank_name_uses_document(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a blank draft name gives a folder called Document."""
        sources = [make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf")]
        store.import_files(sources, draft("  "))
        assert (root / "2024" / "Document").is_dir()

    def test_duplicate_source_names(self, store: DocumentStore, root: Path, temp_dir: Path, make_file):
        """Test same-named files from different folders are deduplicated inside the folder."""
        sources = [make_file(temp_dir / "x" / "scan.pdf"), make_file(temp_dir / "y" / "scan.pdf")]
        result = store.import_files(sources, draft("Scans"))
        assert sorted(p.name for p in result.entry_path.iterdir()) == ["scan-1.pdf", "scan.pdf"]
        record = load_sidecar(sidecar_path_for(result.entry_path))
        assert [a.original_filename for a in record.attachments] == ["scan.pdf", "scan.pdf"]

    def test_partial_failure(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test the sidecar lists only the files that made it."""
        sources = [make_file(inbox_dir / "a.pdf"), inbox_dir / "missing.pdf", make_file(inbox_dir / "c.pdf")]

        result = store.import_files(sources, draft("Docs"))

        assert [p.name for p in result.imported] == ["a.pdf", "c.pdf"]
        assert [p.name for p, _ in result.failed] == ["missing.pdf"]
        record = load_sidecar(sidecar_path_for(root / "2024" / "Docs"))
        assert [a.filename for a in record.attachments] == ["a.pdf", "c.pdf"]

    def test_long_name_folder(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a very long draft name still gives a usable folder."""
        sources = [make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf")]

        result = store.import_files(sources, draft("N" * 300))

        assert result.ok
        assert result.entry_path == root / "2024" / ("N" * 200)
        assert load_sidecar(sidecar_path_for(result.entry_path)).name == "N" * 300

    def test_total_failure_cleans_up(self, store: DocumentStore, root: Path, inbox_dir: Path):
        """Test no folder or sidecar is left when nothing was imported."""
        result = store.import_files([inbox_dir / "x.pdf", inbox_dir / "y.pdf"], draft("Docs"))
        assert len(result.failed) == 2
        assert list((root / "2024").iterdir()) == []


class TestPermissionFailures:
    """Tests for lost write access."""

    def test_permission_error_stops_batch(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a permission failure pauses access and skips the rest."""
        lost = MagicMock()
        store.access.on_access_lost = lost
        sources = [make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf", "c.pdf")]

        calls = []

        def place(source, dest, copy):
            calls.append(source.name)
            if source.name == "b.pdf":
                raise PermissionError(13, "Permission denied", str(dest))
            dest.write_bytes(source.read_bytes())

        with patch("document_store.place_file", side_effect=place):
            result = store.import_files(sources, draft("Docs"))

        assert calls == ["a.pdf", "b.pdf"]
        assert result.permission_denied
        assert [p.name for p in result.imported] == ["a.pdf"]
        assert [p.name for p in result.skipped] == ["c.pdf"]
        assert store.access.is_paused
        lost.assert_called_once()

    def test_paused_access_blocks_import(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test nothing is attempted while access is paused."""
        store.access.revoke("test")
        result = store.import_files([make_file(inbox_dir / "a.pdf")], draft())
        assert result.permission_denied
        assert result.imported == []

    def test_paused_access_blocks_update(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test mutations raise PermissionDeniedError while paused."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft())
        entry = store.catalog.entries[0]
        store.access.revoke("test")
        with pytest.raises(PermissionDeniedError):
            store.update(entry)

    def test_failed_check_pauses(self, store: DocumentStore):
        """Test an unwritable root pauses access on the next mutation."""
        with patch.object(StorageAccess, "check", return_value=False):
            with pytest.raises(PermissionDeniedError):
                store.create_placeholder(draft())
        assert store.access.is_paused


class TestAddToExisting:
    """Tests for adding files to an existing record."""

    def test_promotion(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a single-file record becomes a folder when files are added."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft("W-2"))
        target = store.catalog.entries[0]

        result = store.import_files([make_file(inbox_dir / "w2-page2.pdf")], target=target)

        folder = root / "2024" / "W-2"
        assert result.entry_path == folder
        assert sorted(p.name for p in folder.iterdir()) == ["w2-page2.pdf", "w2.pdf"]
        assert not (root / "2024" / "w2.pdf").exists()
        assert not (root / "2024" / "w2.pdf.meta.json").exists()
        record = load_sidecar(root / "2024" / "W-2.meta.json")
        assert [a.filename for a in record.attachments] == ["w2.pdf", "w2-page2.pdf"]
        assert [a.is_original_file for a in record.attachments] == [True, False]
        assert record.name == "W-2"

        assert len(store.catalog) == 1
        assert store.catalog.entries[0].is_document_folder

    def test_promotion_long_name(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a record renamed to a very long name can still be promoted."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft("W-2"))
        entry = store.catalog.entries[0]
        store.update(entry.with_record(replace(entry.record, name="N" * 300)))

        result = store.import_files([make_file(inbox_dir / "page2.pdf")], target=store.catalog.get(entry.id))

        folder = root / "2024" / ("N" * 200)
        assert result.ok
        assert result.entry_path == folder
        assert sorted(p.name for p in folder.iterdir()) == ["page2.pdf", "w2.pdf"]

    @pytest.mark.parametrize("error, paused", [
        (PermissionError(errno.EACCES, "Permission denied"), True),
        (OSError(errno.ENAMETOOLONG, "File name too long"), False),
    ])
    def test_promotion_folder_failure(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file, error, paused):
        """Test a folder that cannot be created is reported in the result."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft("W-2"))
        target = store.catalog.entries[0]
        extra = make_file(inbox_dir / "page2.pdf")

        with patch("attachments.claim_destination", side_effect=error):
            result = store.import_files([extra], target=target)

        assert result.imported == []
        assert [p for p, _ in result.failed] == [extra]
        assert result.permission_denied is paused
        assert store.access.is_paused is paused
        assert (root / "2024" / "w2.pdf").is_file()
        assert not (root / "2024" / "W-2").exists()

    def test_add_to_folder(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test files are appended to an existing folder record."""
        store.import_files([make_file(inbox_dir / "a.pdf"), make_file(inbox_dir / "b.pdf")], draft("Docs"))
        target = store.catalog.entries[0]

        store.import_files([make_file(inbox_dir / "a.pdf", b"other")], target=target)

        record = load_sidecar(root / "2024" / "Docs.meta.json")
        assert [a.filename for a in record.attachments] == ["a.pdf", "b.pdf", "a-1.pdf"]

    def test_fill_placeholder(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test importing into a placeholder keeps its metadata and removes it."""
        placeholder = store.create_placeholder(draft("K-1", amount=Decimal("42"), notes="from fund"))

        store.import_files([make_file(inbox_dir / "k1.pdf")], target=placeholder)

        assert not placeholder.path.exists()
        assert not placeholder.sidecar_path.exists()
        entry = store.catalog.entries[0]
        assert len(store.catalog) == 1
        assert entry.path == root / "2024" / "k1.pdf"
        assert entry.record.name == "K-1"
        assert entry.record.amount == Decimal("42")
        assert entry.record.notes == "from fund"
        assert entry.record.created_at == placeholder.record.created_at


class TestPlaceholders:
    """Tests for placeholder creation."""

    def test_create_placeholder(self, store: DocumentStore, root: Path):
        """Test a zero-byte .placeholder file and sidecar are written."""
        entry = store.create_placeholder(draft("Form 1098: Mortgage"))

        path = root / "2024" / "Form 1098- Mortgage.placeholder"
        assert entry.path == path
        assert path.stat().st_size == 0
        assert entry.is_placeholder
        record = load_sidecar(sidecar_path_for(path))
        assert record.name == "Form 1098: Mortgage"
        assert len(record.attachments) == 1

    def test_placeholder_cannot_be_opened(self, store: DocumentStore):
        """Test opening a placeholder raises NoFileAttachedError."""
        entry = store.create_placeholder(draft())
        with pytest.raises(NoFileAttachedError):
            store.open_entry(entry)

    def test_long_placeholder_name(self, store: DocumentStore, root: Path):
        """Test a long multi-byte name is cut to fit, keeping the placeholder suffix."""
        entry = store.create_placeholder(draft("É" * 300))

        assert entry.is_placeholder
        assert entry.path.parent == root / "2024"
        assert len(entry.path.name.encode("utf-8")) <= 200
        assert entry.record.name == "É" * 300

    def test_bulk_placeholders(self, store: DocumentStore, root: Path):
        """Test bulk creation reconciles once at the end."""
        drafts = [draft("A"), draft("B"), draft("A")]
        with patch.object(store, "reload", wraps=store.reload) as reload:
            result = store.create_bulk_placeholders(drafts)

        assert (result.succeeded, result.failed) == (3, 0)
        reload.assert_called_once()
        names = sorted(p.name for p in (root / "2024").iterdir() if p.suffix == ".placeholder")
        assert names == ["A-1.placeholder", "A.placeholder", "B.placeholder"]
        assert len(store.catalog) == 3


class TestUpdate:
    """Tests for metadata updates."""

    def test_update_rewrites_sidecar_only(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test an update saves the sidecar and patches the catalog without moving files."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft())
        entry = store.catalog.entries[0]

        updated = store.update(entry.with_record(replace(entry.record, status="Done", year=2023)))

        assert (root / "2024" / "w2.pdf").exists()
        assert load_sidecar(entry.sidecar_path).status == "Done"
        assert store.catalog.get(entry.id).record.status == "Done"
        assert updated.id == entry.id

    def test_update_persists_legacy_migration(self, store: DocumentStore, root: Path, make_file):
        """Test saving a legacy record writes the synthesized attachment list."""
        path = make_file(root / "2024" / "old.pdf")
        sidecar_path_for(path).write_text(
            '{"name": "Old", "notes": "", "status": "Todo", "year": 2024, "createdAt": "2024-01-01T00:00:00Z"}'
        )
        store.reload()
        entry = store.catalog.entries[0]

        store.update(entry)

        record = load_sidecar(sidecar_path_for(path))
        assert [a.filename for a in record.attachments] == ["old.pdf"]

    def test_update_new_status_is_registered(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a status typed into a record joins the registry."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft())
        entry = store.catalog.entries[0]
        store.update(entry.with_record(replace(entry.record, status="Filed")))
        assert "Filed" in store.registry


    def test_update_rejects_nan_amount(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a NaN amount never reaches the sidecar."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft(notes="important"))
        entry = store.catalog.entries[0]
        record = replace(entry.record)
        record.amount = Decimal("NaN")

        with pytest.raises(InvalidAmountError):
            store.update(entry.with_record(record))

        store.reload()
        saved = store.catalog.entries[0].record
        assert (saved.name, saved.notes, saved.status) == ("W-2 Acme", "important", "Todo")


class TestDelete:
    """Tests for deletion."""

    def test_delete_single(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test deleting removes file, sidecar and catalog entry."""
        store.import_files([make_file(inbox_dir / "w2.pdf")], draft())
        entry = store.catalog.entries[0]

        store.delete(entry)

        assert not entry.path.exists()
        assert not entry.sidecar_path.exists()
        assert len(store.catalog) == 0
        assert store.years == ()

    def test_delete_folder(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test deleting a multi-file record removes the whole folder."""
        store.import_files([make_file(inbox_dir / "a.pdf"), make_file(inbox_dir / "b.pdf")], draft("Docs"))
        entry = store.catalog.entries[0]
        store.delete(entry)
        assert not entry.path.exists()
        assert not entry.sidecar_path.exists()

    def test_delete_recomputes_years(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test deleting the last document of a year drops the year."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft("A", year=2023))
        store.import_files([make_file(inbox_dir / "b.pdf")], draft("B", year=2024))
        assert store.years == (2024, 2023)

        store.delete(store.catalog.filtered(year=2023)[0])

        assert store.years == (2024,)

    def test_delete_failure_raises(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a file that cannot be removed raises StorageIOError and stays listed."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft())
        entry = store.catalog.entries[0]
        with patch.object(StorageAccess, "check", return_value=True), \
                patch.object(Path, "unlink", side_effect=OSError(16, "Device busy")):
            with pytest.raises(StorageIOError):
                store.delete(entry)
        assert len(store.catalog) == 1

    def test_delete_many(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a batch delete reports per-record failures."""
        for name in ("a", "b", "c"):
            store.import_files([make_file(inbox_dir / f"{name}.pdf")], draft(name.upper()))
        entries = list(store.catalog.entries)
        broken = replace(entries[1], is_document_folder=True)  # rmtree on a file fails

        result = store.delete_many([entries[0], broken, entries[2]])

        assert (result.succeeded, result.failed) == (2, 1)
        assert [e.record.name for e in store.catalog] == ["B"]


class TestRemoveAttachment:
    """Tests for attachment removal and folder collapse."""

    def test_remove_one_of_three(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test removing from a larger record deletes the file and re-saves."""
        store.import_files([make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf", "c.pdf")], draft("Docs"))
        entry = store.catalog.entries[0]

        updated = store.remove_attachment(entry.attachments[1], entry)

        assert not (root / "2024" / "Docs" / "b.pdf").exists()
        assert [a.filename for a in updated.attachments] == ["a.pdf", "c.pdf"]
        assert [a.filename for a in load_sidecar(entry.sidecar_path).attachments] == ["a.pdf", "c.pdf"]

    def test_collapse_to_single_file(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test leaving one attachment turns the folder back into a file."""
        store.import_files([make_file(inbox_dir / "a.pdf"), make_file(inbox_dir / "b.pdf")], draft("Docs"))
        entry = store.catalog.entries[0]

        updated = store.remove_attachment(entry.attachments[0], entry)

        assert updated.path == root / "2024" / "b.pdf"
        assert not updated.is_document_folder
        assert not (root / "2024" / "Docs").exists()
        assert not (root / "2024" / "Docs.meta.json").exists()
        record = load_sidecar(root / "2024" / "b.pdf.meta.json")
        assert record.name == "Docs"
        assert len(record.attachments) == 1
        assert record.attachments[0].is_original_file
        assert store.catalog.get(entry.id).path == updated.path

    def test_remove_last_deletes_record(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test removing the only attachment deletes the record."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft())
        entry = store.catalog.entries[0]

        assert store.remove_attachment(entry.attachments[0], entry) is None
        assert not entry.path.exists()
        assert len(store.catalog) == 0


class TestStatuses:
    """Tests for status removal through the store."""

    def test_remove_status_reassigns(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test documents on a removed status move to the new default."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft(status="In Progress"))

        moved = store.remove_status("In Progress")

        assert moved == 1
        entry = store.catalog.entries[0]
        assert entry.record.status == "Todo"
        assert load_sidecar(entry.sidecar_path).status == "Todo"

    def test_cannot_remove_last(self, store: DocumentStore):
        """Test the registry never becomes empty."""
        store.remove_status("Done")
        store.remove_status("In Progress")
        with pytest.raises(StatusRegistryError):
            store.remove_status("Todo")


    def test_remove_status_while_paused(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a refused removal leaves the registry and the documents as they were."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft(status="Done"))
        store.access.revoke("test")

        with pytest.raises(PermissionDeniedError):
            store.remove_status("Done")

        assert store.registry.statuses == ["Todo", "In Progress", "Done"]
        assert store.catalog.entries[0].record.status == "Done"

    def test_remove_status_failed_save_keeps_status(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test the status stays registered when a document cannot be reassigned."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft(status="In Progress"))

        with patch.object(store, "_save", side_effect=StorageIOError(root, "write sidecar")):
            with pytest.raises(StorageIOError):
                store.remove_status("In Progress")

        assert "In Progress" in store.registry
        assert load_sidecar(store.catalog.entries[0].sidecar_path).status == "In Progress"


class TestAvailabilityFlags:
    """Tests for download flags patched into the catalog."""

    @staticmethod
    def flag(store: DocumentStore, entry):
        flagged = replace(entry, is_downloading=True)
        store._catalog = store._catalog.replace(flagged)
        return flagged

    def test_flag_cleared_when_local(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test the flag clears once the last in-flight file arrives."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft())
        entry = self.flag(store, store.catalog.entries[0])

        store._on_availability_changed(entry.attachment_paths[0], False)

        current = store.catalog.get(entry.id)
        assert not current.is_downloading
        assert current.download_progress == 1.0

    def test_deleted_entry_not_restored(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test a delete landing during the flag update wins."""
        store.import_files([make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf")], draft("Pair"))
        entry = self.flag(store, store.catalog.entries[0])

        def delete_meanwhile(path):
            if store.catalog.find(entry.id) is not None:
                store.delete(entry)
            return False

        with patch.object(store.tracker, "is_downloading", side_effect=delete_meanwhile):
            store._on_availability_changed(entry.attachment_paths[0], False)

        assert not entry.path.exists()
        assert len(store.catalog) == 0

    def test_moved_entry_not_overwritten(self, store: DocumentStore, root: Path, inbox_dir: Path, make_file):
        """Test a collapse landing during the flag update keeps the new location."""
        store.import_files([make_file(inbox_dir / n) for n in ("a.pdf", "b.pdf")], draft("Pair"))
        entry = self.flag(store, store.catalog.entries[0])

        def collapse_meanwhile(path):
            current = store.catalog.get(entry.id)
            if current.is_document_folder:
                store.remove_attachment(current.attachments[0], current)
            return False

        with patch.object(store.tracker, "is_downloading", side_effect=collapse_meanwhile):
            store._on_availability_changed(entry.attachment_paths[1], False)

        assert [e.path for e in store.catalog] == [root / "2024" / "b.pdf"]
        assert not store.catalog.entries[0].is_document_folder


class TestOpenAndRoot:
    """Tests for opening records and switching roots."""

    def test_open_local(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test local files are returned directly."""
        store.import_files([make_file(inbox_dir / "a.pdf"), make_file(inbox_dir / "b.pdf")], draft("Docs"))
        entry = store.catalog.entries[0]
        assert [p.name for p in store.open_entry(entry)] == ["a.pdf", "b.pdf"]

    def test_open_timeout(self, context: AppContext, registry, root: Path, make_file):
        """Test a file that never downloads raises FileUnavailableError."""
        make_file(root / "2024" / "cloud.pdf")
        tracker = AvailabilityTracker(
            probe=lambda p: DownloadStatus.NOT_DOWNLOADED, requester=MagicMock(), poll_interval=0.01
        )
        store = DocumentStore(context, registry, tracker=tracker)
        try:
            store.reload()
            entry = store.catalog.entries[0]
            assert entry.is_downloading
            with pytest.raises(FileUnavailableError):
                store.open_entry(entry, timeout=0.05)
        finally:
            store.close()

    def test_set_root(self, store: DocumentStore, temp_dir: Path, make_file):
        """Test switching roots rescans and persists the choice."""
        other = temp_dir / "Other"
        make_file(other / "2022" / "x.pdf")
        persisted = []
        store.on_root_changed = persisted.append

        store.set_root(other)

        assert persisted == [other]
        assert store.years == (2022,)
        assert store.context.selected_year == 2022

    def test_filtered_items_use_context(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test the UI filter state in the context drives filtered_items."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft("A", year=2023, amount=Decimal("5")))
        store.import_files([make_file(inbox_dir / "b.pdf")], draft("B", year=2024, amount=Decimal("7")))

        store.context.selected_year = 2024
        assert [e.record.name for e in store.filtered_items()] == ["B"]
        store.context.selected_year = 2023
        assert store.total_amount() == Decimal("5")
        store.context.selected_year = None
        assert store.total_amount() == Decimal("12")

    def test_ids_survive_reload(self, store: DocumentStore, inbox_dir: Path, make_file):
        """Test an entry keeps its id across reconciliation passes."""
        store.import_files([make_file(inbox_dir / "a.pdf")], draft("A"))
        entry_id = store.catalog.entries[0].id
        store.import_files([make_file(inbox_dir / "b.pdf")], draft("B"))
        assert store.get(entry_id).record.name == "A"

    def test_submit_runs_on_pool(self, store: DocumentStore):
        """Test operations can be run off the calling thread."""
        future = store.submit(store.create_placeholder, draft("Later"))
        entry = future.result(timeout=5)
        assert entry.record.name == "Later"
