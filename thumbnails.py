#!/usr/bin/env python3
"""
Thumbnail generation for documents.

Images are scaled with Pillow; PDFs are rendered from their first page with
PyMuPDF. Output is JPEG, lightly sharpened so scanned text stays readable at
small sizes.
"""

import io
import logging
from pathlib import Path
from typing import Optional

import fitz  # PyMuPDF
from PIL import Image, ImageEnhance, ImageFilter

from attachments import PLACEHOLDER_SUFFIX, CatalogEntry
from availability import AvailabilityTracker

logger = logging.getLogger("taxbox.thumbnails")

IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".bmp", ".gif", ".tif", ".tiff"}
DEFAULT_SIZE = (144, 144)


def sharpen_for_text(img: Image.Image) -> Image.Image:
    """Apply light sharpening to improve text readability in thumbnails."""
    # UnsharpMask: radius=1, percent=120, threshold=2
    img = img.filter(ImageFilter.UnsharpMask(radius=1, percent=120, threshold=2))
    # Slight contrast boost to make text pop
    return ImageEnhance.Contrast(img).enhance(1.1)


def _to_jpeg(img: Image.Image, size: tuple[int, int]) -> bytes:
    img.thumbnail(size, Image.Resampling.LANCZOS)
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    img = sharpen_for_text(img)
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def _render_pdf(path: Path, size: tuple[int, int]) -> Optional[bytes]:
    with fitz.open(str(path)) as doc:
        if len(doc) == 0:
            return None
        # Render at 2x for sharp text
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(2.0, 2.0))
        img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
    return _to_jpeg(img, size)


def generate_thumbnail(file_path: str | Path, size: tuple[int, int] = DEFAULT_SIZE) -> bytes | None:
    """Generate a JPEG thumbnail for a file.

    Args:
        file_path: Path to the file
        size: Maximum thumbnail size

    Returns:
        JPEG bytes, or None for placeholders, empty files, unsupported types
        and files that cannot be decoded
    """
    path = Path(file_path)
    suffix = path.suffix.lower()

    if path.name.endswith(PLACEHOLDER_SUFFIX):
        return None
    if suffix not in IMAGE_SUFFIXES and suffix != ".pdf":
        return None

    try:
        if path.stat().st_size == 0:
            return None
        if suffix == ".pdf":
            return _render_pdf(path, size)
        with Image.open(path) as img:
            img.load()
            return _to_jpeg(img.copy(), size)
    except (OSError, ValueError, RuntimeError) as e:
        logger.debug(f"No thumbnail for {path.name}: {e}")
        return None


def thumbnail_for_entry(
    entry: CatalogEntry,
    tracker: Optional[AvailabilityTracker] = None,
    size: tuple[int, int] = DEFAULT_SIZE,
) -> bytes | None:
    """Thumbnail of an entry's primary attachment.

    Never starts a download: remote-only files get no thumbnail until they
    are local.
    """
    if entry.is_placeholder:
        return None
    path = entry.primary_attachment_path
    if path is None:
        return None
    if tracker is not None and not tracker.is_local(path):
        return None
    return generate_thumbnail(path, size)
