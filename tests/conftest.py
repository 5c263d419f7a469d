"""
Pytest configuration and shared fixtures for TaxBox tests.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import settings as settings_module
from availability import AvailabilityTracker, DownloadStatus
from document_store import AppContext, DocumentStore
from status_registry import StatusRegistry


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def root(temp_dir: Path) -> Path:
    """Create an empty storage root."""
    path = temp_dir / "TaxBox"
    path.mkdir()
    return path


@pytest.fixture
def inbox_dir(temp_dir: Path) -> Path:
    """Create a folder to import files from."""
    inbox = temp_dir / "inbox"
    inbox.mkdir()
    return inbox


@pytest.fixture
def make_file() -> Callable[..., Path]:
    """Factory that writes a file (creating parent folders)."""

    def _make(path: Path, content: bytes = b"%PDF-1.4 test content") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def registry() -> StatusRegistry:
    """Status registry with the default statuses."""
    return StatusRegistry(["Todo", "In Progress", "Done"])


@pytest.fixture
def local_tracker() -> AvailabilityTracker:
    """Availability tracker that sees every file as local."""
    return AvailabilityTracker(
        probe=lambda path: DownloadStatus.CURRENT,
        requester=MagicMock(),
        poll_interval=0.01,
    )


@pytest.fixture
def context(root: Path) -> AppContext:
    return AppContext(root=root)


@pytest.fixture
def store(context: AppContext, registry: StatusRegistry, local_tracker: AvailabilityTracker):
    """Document store over the temporary root."""
    document_store = DocumentStore(context, registry, tracker=local_tracker)
    document_store.reload()
    yield document_store
    document_store.close()


@pytest.fixture
def sample_image_path(inbox_dir: Path) -> Path:
    """Create a small test image file."""
    from PIL import Image

    img_path = inbox_dir / "receipt.png"
    img = Image.new("RGB", (300, 200), color="white")
    img.save(img_path)
    return img_path


@pytest.fixture
def sample_pdf_path(inbox_dir: Path) -> Path:
    """Create a one-page PDF."""
    import fitz

    pdf_path = inbox_dir / "w2.pdf"
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "Form W-2 Wage and Tax Statement 2024")
    doc.save(str(pdf_path))
    doc.close()
    return pdf_path


@pytest.fixture(autouse=True)
def reset_env_vars(temp_dir: Path):
    """Reset environment variables and keep the config dir inside the test folder."""
    original_env = os.environ.copy()
    os.environ["XDG_CONFIG_HOME"] = str(temp_dir / "config")
    os.environ.pop("TAXBOX_ROOT", None)
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def isolated_settings(temp_dir: Path, root: Path):
    """Global settings backed by a temp file and pointing at the temp root."""
    settings = settings_module.Settings(
        settings_path=temp_dir / "settings.json",
        config=settings_module.load_config(search_dirs=[]),
    )
    settings.set("root_dir", str(root))
    previous = settings_module._settings
    settings_module._settings = settings
    yield settings
    settings_module._settings = previous
