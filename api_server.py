#!/usr/bin/env python3
"""
JSON-RPC API Server for a desktop front end.

Reads JSON commands from stdin, calls the document store, and writes JSON
responses to stdout. Designed to be spawned as a child process by the UI.

Protocol:
  - Each request is a single line of JSON
  - Each response is a single line of JSON
  - Format: {"id": "uuid", "method": "...", "params": {...}}
  - Response: {"id": "uuid", "result": {...}, "error": null}
  - Errors are reported as "<ErrorClass>: <message>"

Methods:
  - documents:list - Documents for a year/status/query plus the year list
  - documents:reload - Rescan the storage root
  - documents:import - Import files as a new record or into an existing one
  - documents:createPlaceholder - Create a record with no file yet
  - documents:createBulkPlaceholders - Create many placeholders at once
  - documents:update - Edit a record's metadata
  - documents:delete / documents:deleteMany - Delete records
  - documents:removeAttachment - Remove one file from a record
  - documents:open - Make a record's files local and return their paths
  - statuses:list / statuses:add / statuses:remove / statuses:reorder
  - settings:get / settings:set
  - csv:preview - Parse a CSV file and report valid/invalid/duplicate rows
  - csv:import - Create/update records from a CSV file
  - thumbnails:generate - JPEG thumbnail (base64) for a record or file
"""

import base64
import json
import logging
import sys
import traceback
from dataclasses import replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional

import simplejson

# Add the project root to path for imports
sys.path.insert(0, str(Path(__file__).parent))

from attachments import CatalogEntry
from csv_import import DuplicateHandling, parse_csv, plan_import
from document_store import DocumentStore, ImportResult
from errors import TaxBoxError
from settings import get_settings
from sidecar import DraftMeta, check_amount
from thumbnails import generate_thumbnail, thumbnail_for_entry

logger = logging.getLogger("taxbox.api")

VERSION = "1.0.0"

# Store instance shared by all handlers
_store: Optional[DocumentStore] = None


def get_store() -> DocumentStore:
    """Get the store, building it from settings on first use."""
    global _store
    if _store is None:
        settings = get_settings()
        _store = DocumentStore(
            settings.build_context(),
            settings.build_registry(),
            on_root_changed=lambda root: settings.set("root_dir", str(root)),
        )
        _store.reload()
    return _store


def set_store(store: Optional[DocumentStore]) -> None:
    global _store
    _store = store


def send_response(request_id: str, result: Any = None, error: Optional[str] = None):
    """Send a JSON response to stdout."""
    response = {
        "id": request_id,
        "result": result,
        "error": error,
    }
    # Write as single line, then flush
    print(simplejson.dumps(response, ensure_ascii=False, use_decimal=True), flush=True)


# ==============================================================================
# CONVERSIONS
# ==============================================================================

def entry_to_dict(entry: CatalogEntry) -> dict:
    return {
        "id": entry.id,
        "path": str(entry.path),
        "filename": entry.filename,
        "year": entry.year,
        "isDocumentFolder": entry.is_document_folder,
        "isPlaceholder": entry.is_placeholder,
        "isDownloading": entry.is_downloading,
        "downloadProgress": entry.download_progress,
        "attachmentPaths": [str(p) for p in entry.attachment_paths],
        "meta": entry.record.to_dict(),
    }


def import_result_to_dict(result: ImportResult) -> dict:
    return {
        "entryPath": str(result.entry_path) if result.entry_path else None,
        "imported": [str(p) for p in result.imported],
        "failed": [{"path": str(p), "error": err} for p, err in result.failed],
        "skipped": [str(p) for p in result.skipped],
        "permissionDenied": result.permission_denied,
    }


def parse_amount(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("amount must be a number")
    try:
        return check_amount(Decimal(str(value)))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {value!r}") from e


def draft_from_params(data: dict) -> DraftMeta:
    return DraftMeta(
        name=str(data.get("name", "")),
        amount=parse_amount(data.get("amount")),
        notes=str(data.get("notes", "")),
        status=str(data.get("status", "")),
        year=int(data.get("year") or datetime.now().year),
    )


def _require(params: dict, key: str):
    value = params.get(key)
    if value is None or value == "":
        raise ValueError(f"{key} parameter is required")
    return value


def _entry(params: dict) -> CatalogEntry:
    return get_store().get(_require(params, "id"))


def _read_csv(params: dict) -> str | bytes:
    if params.get("text") is not None:
        return params["text"]
    return Path(_require(params, "filePath")).read_bytes()


# ==============================================================================
# DOCUMENTS
# ==============================================================================

def handle_documents_list(params: dict) -> dict:
    """List documents, optionally changing the year/status/query filters first."""
    store = get_store()
    ctx = store.context
    if "year" in params:
        ctx.selected_year = params["year"]
    if "status" in params:
        ctx.status_filter = params["status"] or None
    if "query" in params:
        ctx.query = params["query"] or ""

    documents = [entry_to_dict(e) for e in store.filtered_items()]
    return {
        "documents": documents,
        "count": len(documents),
        "years": list(store.years),
        "selectedYear": ctx.selected_year,
        "totalAmount": str(store.total_amount()),
    }


def handle_documents_reload(params: dict) -> dict:
    get_store().reload()
    return handle_documents_list(params)


def handle_documents_import(params: dict) -> dict:
    """Import files. With targetId the files are added to that record."""
    paths = _require(params, "paths")
    store = get_store()
    target = store.get(params["targetId"]) if params.get("targetId") else None
    draft = draft_from_params(params["draft"]) if params.get("draft") else None
    result = store.import_files(paths, draft=draft, target=target)
    return import_result_to_dict(result)


def handle_documents_create_placeholder(params: dict) -> dict:
    entry = get_store().create_placeholder(draft_from_params(_require(params, "draft")))
    return {"document": entry_to_dict(entry) if entry else None}


def handle_documents_create_bulk_placeholders(params: dict) -> dict:
    drafts = [draft_from_params(d) for d in _require(params, "drafts")]
    result = get_store().create_bulk_placeholders(drafts)
    return {"succeeded": result.succeeded, "failed": result.failed, "errors": result.errors}


def handle_documents_update(params: dict) -> dict:
    """Update metadata fields (name, amount, notes, status, year) of a record."""
    entry = _entry(params)
    fields = params.get("fields", {})
    changes = {}
    for key in ("name", "notes", "status"):
        if key in fields:
            changes[key] = str(fields[key])
    if "amount" in fields:
        changes["amount"] = parse_amount(fields["amount"])
    if "year" in fields:
        changes["year"] = int(fields["year"])

    updated = get_store().update(entry.with_record(replace(entry.record, **changes)))
    return {"document": entry_to_dict(updated)}


def handle_documents_delete(params: dict) -> dict:
    entry = _entry(params)
    get_store().delete(entry)
    return {"success": True, "deleted": str(entry.path)}


def handle_documents_delete_many(params: dict) -> dict:
    store = get_store()
    entries = [store.get(i) for i in _require(params, "ids")]
    result = store.delete_many(entries)
    return {"succeeded": result.succeeded, "failed": result.failed, "errors": result.errors}


def handle_documents_remove_attachment(params: dict) -> dict:
    entry = _entry(params)
    filename = _require(params, "filename")
    attachment = next((a for a in entry.attachments if a.filename == filename), None)
    if attachment is None:
        raise ValueError(f"No attachment named {filename}")
    updated = get_store().remove_attachment(attachment, entry)
    return {"document": entry_to_dict(updated) if updated else None, "deleted": updated is None}


def handle_documents_open(params: dict) -> dict:
    paths = get_store().open_entry(_entry(params), timeout=params.get("timeout"))
    return {"paths": [str(p) for p in paths]}


# ==============================================================================
# STATUSES
# ==============================================================================

def handle_statuses_list(params: dict) -> dict:
    registry = get_store().registry
    return {"statuses": registry.statuses, "default": registry.default}


def handle_statuses_add(params: dict) -> dict:
    get_store().registry.add(_require(params, "name"))
    return handle_statuses_list(params)


def handle_statuses_remove(params: dict) -> dict:
    moved = get_store().remove_status(_require(params, "name"))
    result = handle_statuses_list(params)
    result["moved"] = moved
    return result


def handle_statuses_reorder(params: dict) -> dict:
    get_store().registry.reorder(_require(params, "statuses"))
    return handle_statuses_list(params)


# ==============================================================================
# SETTINGS
# ==============================================================================

def handle_settings_get(params: dict) -> dict:
    """Get all settings."""
    return get_settings().to_dict()


def handle_settings_set(params: dict) -> dict:
    """Update a setting. Storage settings take effect immediately."""
    key = _require(params, "key")
    value = params.get("value")
    store = get_store()

    if key == "root_dir":
        store.set_root(value)  # persisted via on_root_changed
    elif key == "statuses":
        store.registry.reorder(value)  # persisted via the registry callback
    else:
        get_settings().set(key, value)
        if key == "copy_on_import":
            store.context.copy_on_import = bool(value)
        elif key == "download_timeout":
            store.context.download_timeout = float(value)

    return {"success": True, "key": key}


# ==============================================================================
# CSV / THUMBNAILS
# ==============================================================================

def handle_csv_preview(params: dict) -> dict:
    store = get_store()
    result = parse_csv(
        _read_csv(params),
        default_year=int(params.get("defaultYear") or store.context.selected_year or datetime.now().year),
        default_status=store.registry.default,
    ).with_existing(e.record.name for e in store.catalog)

    return {
        "totalRows": result.total_rows,
        "validRows": len(result.valid_rows),
        "invalidRows": [
            {"line": r.line_number, "name": r.name, "errors": r.errors} for r in result.invalid_rows
        ],
        "duplicateNames": sorted(result.duplicate_names),
    }


def handle_csv_import(params: dict) -> dict:
    """Create placeholders (and update duplicates if asked) from a CSV file."""
    store = get_store()
    handling = DuplicateHandling(params.get("duplicateHandling", "skip"))
    result = parse_csv(
        _read_csv(params),
        default_year=int(params.get("defaultYear") or store.context.selected_year or datetime.now().year),
        default_status=store.registry.default,
    )
    drafts, updates = plan_import(result, store.catalog.entries, handling)

    updated = 0
    errors = []
    for entry in updates:
        try:
            store.update(entry)
            updated += 1
        except TaxBoxError as e:
            errors.append(f"{entry.record.name}: {e}")

    created = store.create_bulk_placeholders(drafts) if drafts else None
    return {
        "created": created.succeeded if created else 0,
        "updated": updated,
        "failed": (created.failed if created else 0) + len(errors),
        "invalidRows": len(result.invalid_rows),
        "errors": errors + (created.errors if created else []),
    }


def handle_thumbnails_generate(params: dict) -> dict:
    """Generate a JPEG thumbnail for a record (id) or a file (filePath)."""
    size = params.get("size", 144)
    size = (int(size), int(size))
    if params.get("id"):
        store = get_store()
        data = thumbnail_for_entry(store.get(params["id"]), store.tracker, size)
    else:
        data = generate_thumbnail(_require(params, "filePath"), size)

    return {
        "mimeType": "image/jpeg",
        "data": base64.b64encode(data).decode("ascii") if data else None,
    }


# Method dispatcher
METHODS = {
    "documents:list": handle_documents_list,
    "documents:reload": handle_documents_reload,
    "documents:import": handle_documents_import,
    "documents:createPlaceholder": handle_documents_create_placeholder,
    "documents:createBulkPlaceholders": handle_documents_create_bulk_placeholders,
    "documents:update": handle_documents_update,
    "documents:delete": handle_documents_delete,
    "documents:deleteMany": handle_documents_delete_many,
    "documents:removeAttachment": handle_documents_remove_attachment,
    "documents:open": handle_documents_open,
    "statuses:list": handle_statuses_list,
    "statuses:add": handle_statuses_add,
    "statuses:remove": handle_statuses_remove,
    "statuses:reorder": handle_statuses_reorder,
    "settings:get": handle_settings_get,
    "settings:set": handle_settings_set,
    "csv:preview": handle_csv_preview,
    "csv:import": handle_csv_import,
    "thumbnails:generate": handle_thumbnails_generate,
}


def handle_request(request: dict) -> None:
    """Handle a single JSON-RPC request."""
    request_id = request.get("id", "unknown")
    method = request.get("method")
    params = request.get("params") or {}

    if not method:
        send_response(request_id, error="method is required")
        return

    if method not in METHODS:
        send_response(request_id, error=f"Unknown method: {method}")
        return

    try:
        result = METHODS[method](params)
        send_response(request_id, result=result)
    except (TaxBoxError, ValueError, OSError) as e:
        logger.debug(f"Error handling {method}: {traceback.format_exc()}")
        send_response(request_id, error=f"{type(e).__name__}: {e}")


def main():
    """Main loop: read JSON from stdin, process, write JSON to stdout."""
    from taxbox import setup_logging

    setup_logging()
    logger.info("API server starting...")

    # Send ready signal
    send_response("__ready__", result={"status": "ready", "version": VERSION})

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue

        try:
            request = json.loads(line)
        except json.JSONDecodeError as e:
            logger.debug(f"Invalid JSON: {e}")
            send_response("__error__", error=f"Invalid JSON: {e}")
            continue
        if not isinstance(request, dict):
            send_response("__error__", error="Request must be a JSON object")
            continue

        try:
            handle_request(request)
        except Exception as e:
            logger.error(f"Unexpected error: {traceback.format_exc()}")
            send_response(request.get("id", "__error__"), error=f"Server error: {e}")


if __name__ == "__main__":
    main()
