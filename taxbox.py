#!/usr/bin/env python3
"""
TaxBox - keep tax documents in a year-partitioned folder with JSON sidecars.

Every document lives under <root>/<year>/ either as a single file or as a
folder of files, with a <name>.meta.json sidecar holding name, amount, notes
and status. The catalog is rebuilt from disk on every run.

Usage:
    python taxbox.py list --year 2024
    python taxbox.py import ~/Downloads/w2.pdf --name "W-2 Acme" --amount 85000
    python taxbox.py serve
"""

import os
import sys
import argparse
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

from attachments import CatalogEntry
from csv_import import DuplicateHandling, parse_csv, plan_import
from document_store import DocumentStore
from errors import TaxBoxError
from settings import get_settings, load_config
from sidecar import DraftMeta


# ==============================================================================
# LOGGING CONFIGURATION
# ==============================================================================

def setup_logging() -> logging.Logger:
    """Configure the taxbox logger from LOG_LEVEL / LOG_FILE (or config.yaml)."""
    log_config = load_config()["logging"]
    log_level = (os.getenv("LOG_LEVEL") or log_config.get("level") or "INFO").upper()
    log_file = os.getenv("LOG_FILE") or log_config.get("file") or ""

    # Create logger
    logger = logging.getLogger("taxbox")
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Prevent duplicate handlers on reimport
    if logger.handlers:
        return logger

    # Console handler (stderr, so stdout stays free for CLI/JSON output)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)
    console_format = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    console_handler.setFormatter(console_format)
    logger.addHandler(console_handler)

    # File handler (if LOG_FILE is set)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d - %(message)s"
        )
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger


# ==============================================================================
# HELPERS
# ==============================================================================

def build_store(args: argparse.Namespace) -> DocumentStore:
    """Create the document store from settings, with command-line overrides."""
    settings = get_settings()
    context = settings.build_context()
    if args.root:
        context.root = Path(args.root).expanduser()
    if args.move:
        context.copy_on_import = False
    context.root = context.root.resolve()

    store = DocumentStore(
        context,
        settings.build_registry(),
        on_root_changed=lambda root: settings.set("root_dir", str(root)),
    )
    store.reload()
    return store


def parse_amount(text: Optional[str]) -> Optional[Decimal]:
    if text is None:
        return None
    try:
        amount = Decimal(text.replace("$", "").replace(",", ""))
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid amount: {text}")
    if not amount.is_finite():
        raise argparse.ArgumentTypeError(f"invalid amount: {text}")
    return amount


def find_entry(store: DocumentStore, path: str) -> CatalogEntry:
    entry = store.catalog.find_by_path(Path(path).expanduser().resolve())
    if entry is None:
        entry = store.catalog.find_by_path(Path(path).expanduser())
    if entry is None:
        raise SystemExit(f"❌ No document at {path}")
    return entry


def format_entry(entry: CatalogEntry) -> str:
    meta = entry.record
    amount = f"${meta.amount:,.2f}" if meta.amount is not None else "-"
    icon = "📝" if entry.is_placeholder else ("📁" if entry.is_document_folder else "📄")
    flags = " ☁️" if entry.is_downloading else ""
    files = f" ({entry.attachment_count} files)" if entry.is_document_folder else ""
    return f"{icon} {meta.name:<32} {meta.status:<12} {amount:>12}  {entry.filename}{files}{flags}"


def _draft(args: argparse.Namespace, name: str, store: DocumentStore) -> DraftMeta:
    return DraftMeta(
        name=name,
        amount=parse_amount(args.amount),
        notes=args.notes or "",
        status=args.status or store.registry.default,
        year=args.year or datetime.now().year,
    )


# ==============================================================================
# COMMANDS
# ==============================================================================

def cmd_list(args, store: DocumentStore) -> int:
    ctx = store.context
    ctx.selected_year = None if args.all else (args.year or ctx.selected_year)
    ctx.status_filter = args.status
    ctx.query = args.query or ""

    entries = store.filtered_items()
    label = "all years" if ctx.selected_year is None else str(ctx.selected_year)
    print(f"\n📂 {store.context.root} ({label})\n")
    for entry in entries:
        print(format_entry(entry))
    print(f"\n{'='*50}")
    print(f"✅ {len(entries)} document(s), total ${store.total_amount():,.2f}")
    return 0


def cmd_years(args, store: DocumentStore) -> int:
    if not store.years:
        print("No documents yet")
    for year in store.years:
        count = len(store.catalog.filtered(year=year))
        print(f"📅 {year}  ({count} documents)")
    return 0


def cmd_import(args, store: DocumentStore) -> int:
    paths = [Path(p).expanduser() for p in args.files]
    target = find_entry(store, args.into) if args.into else None
    draft = None
    if target is None:
        draft = _draft(args, args.name or paths[0].stem, store)

    result = store.import_files(paths, draft=draft, target=target)
    for path in result.imported:
        print(f"  📄 Imported: {path.name}")
    for path, error in result.failed:
        print(f"  ❌ {path.name}: {error}")
    if result.permission_denied:
        print("⚠️  Write access to the storage folder was lost; choose it again with --root")
    if result.entry_path:
        print(f"✅ Saved to {result.entry_path}")
    return 0 if result.imported and not result.failed else 1


def cmd_placeholder(args, store: DocumentStore) -> int:
    entry = store.create_placeholder(_draft(args, args.name, store))
    if entry is not None:
        print(f"✅ Created placeholder {entry.filename}")
    return 0


def cmd_delete(args, store: DocumentStore) -> int:
    entries = [find_entry(store, p) for p in args.paths]
    result = store.delete_many(entries)
    for error in result.errors:
        print(f"  ❌ {error}")
    print(f"🗑️  Deleted {result.succeeded} document(s)")
    return 0 if not result.failed else 1


def cmd_import_csv(args, store: DocumentStore) -> int:
    data = Path(args.csv).expanduser().read_bytes()
    result = parse_csv(
        data,
        default_year=args.default_year or datetime.now().year,
        default_status=store.registry.default,
    )
    for row in result.invalid_rows:
        print(f"  ⚠️  Line {row.line_number}: {'; '.join(row.errors)}")

    drafts, updates = plan_import(result, store.catalog.entries, DuplicateHandling(args.duplicates))
    for entry in updates:
        store.update(entry)
    created = store.create_bulk_placeholders(drafts) if drafts else None

    print(f"\n{'='*50}")
    print(f"✅ Created {created.succeeded if created else 0}, updated {len(updates)}, "
          f"skipped {len(result.invalid_rows)} invalid row(s)")
    return 0 if not created or not created.failed else 1


def cmd_statuses(args, store: DocumentStore) -> int:
    registry = store.registry
    if args.action == "add":
        for name in args.names:
            registry.add(name)
    elif args.action == "remove":
        for name in args.names:
            moved = store.remove_status(name)
            print(f"🏷️  Removed '{name}', moved {moved} document(s) to '{registry.default}'")
    elif args.action == "reorder":
        registry.reorder(args.names)

    for i, name in enumerate(registry.statuses):
        marker = " (default)" if i == 0 else ""
        print(f"🏷️  {name}{marker}")
    return 0


def cmd_serve(args, store: DocumentStore) -> int:
    import api_server

    api_server.set_store(store)
    api_server.main()
    return 0


# ==============================================================================
# MAIN
# ==============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Organize tax documents by year with JSON sidecars",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Storage layout
==============
  <root>/2024/w2.pdf                 single-file document
  <root>/2024/w2.pdf.meta.json       its sidecar
  <root>/2024/1099s/                 multi-file document
  <root>/2024/1099s.meta.json
  <root>/2024/K-1.placeholder        record waiting for its file

Examples:
  # Import two files as one document
  python taxbox.py import a.pdf b.pdf --name "1099s" --year 2024

  # Add a file to an existing document
  python taxbox.py import c.pdf --into ~/Documents/TaxBox/2024/1099s

  # Create placeholders from a CSV checklist
  python taxbox.py import-csv checklist.csv --duplicates update
        """
    )
    parser.add_argument("--root", "-r", help="Storage root (default: from settings)")
    parser.add_argument("--move", action="store_true", help="Move imported files instead of copying")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("list", help="List documents")
    p.add_argument("--year", "-y", type=int)
    p.add_argument("--all", "-a", action="store_true", help="All years")
    p.add_argument("--status", "-s")
    p.add_argument("--query", "-q")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("years", help="List years that have documents")
    p.set_defaults(func=cmd_years)

    def add_meta_args(p):
        p.add_argument("--year", "-y", type=int)
        p.add_argument("--status", "-s")
        p.add_argument("--amount")
        p.add_argument("--notes", default="")

    p = sub.add_parser("import", help="Import files")
    p.add_argument("files", nargs="+")
    p.add_argument("--name", "-n")
    p.add_argument("--into", help="Path of an existing document to add the files to")
    add_meta_args(p)
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("placeholder", help="Create a document without a file")
    p.add_argument("name")
    add_meta_args(p)
    p.set_defaults(func=cmd_placeholder)

    p = sub.add_parser("delete", help="Delete documents (file or folder plus sidecar)")
    p.add_argument("paths", nargs="+")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("import-csv", help="Create placeholders from a CSV file")
    p.add_argument("csv")
    p.add_argument("--duplicates", choices=[h.value for h in DuplicateHandling], default="skip")
    p.add_argument("--default-year", type=int)
    p.set_defaults(func=cmd_import_csv)

    p = sub.add_parser("statuses", help="Show or edit the status list")
    p.add_argument("action", nargs="?", choices=["list", "add", "remove", "reorder"], default="list")
    p.add_argument("names", nargs="*")
    p.set_defaults(func=cmd_statuses)

    p = sub.add_parser("serve", help="Run the JSON-RPC server on stdin/stdout")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging()

    store = build_store(args)
    try:
        return args.func(args, store)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except TaxBoxError as e:
        print(f"❌ {e}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
