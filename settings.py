#!/usr/bin/env python3
"""
Settings management for TaxBox.

Handles persistent user configuration stored in a JSON file.
Settings are stored in the user's config directory:
- macOS: ~/Library/Application Support/TaxBox/settings.json
- Linux: ~/.config/TaxBox/settings.json
- Windows: %APPDATA%/TaxBox/settings.json

Deployment defaults come from config.yaml (or config.local.yaml) next to this
file, and from environment variables (a .env file is loaded if present).
"""

import os
import sys
import json
import logging
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

# Load environment variables from .env file (if it exists and is accessible)
try:
    load_dotenv()
except (PermissionError, OSError):
    pass  # .env not accessible

logger = logging.getLogger("taxbox.settings")

APP_NAME = "TaxBox"


# ==============================================================================
# CONFIGURATION LOADING
# ==============================================================================

def load_config(search_dirs: Optional[list[Path]] = None) -> dict:
    """Load deployment configuration from config.local.yaml / config.yaml.

    Args:
        search_dirs: directories to look in (defaults to this file's directory)

    Returns:
        Config dict; keys missing from the YAML keep their defaults
    """
    config = {
        "paths": {
            "root_dir": "",
        },
        "copy_on_import": True,
        "download_timeout": 30,
        "logging": {
            "level": "INFO",
            "file": "",
        },
    }

    if search_dirs is None:
        search_dirs = [Path(__file__).parent]

    config_paths = []
    for directory in search_dirs:
        config_paths.append(Path(directory) / "config.local.yaml")  # Local overrides first
        config_paths.append(Path(directory) / "config.yaml")

    for config_path in config_paths:
        if not config_path.exists():
            continue
        try:
            with open(config_path, "r") as f:
                yaml_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            print(f"Warning: Could not load {config_path}: {e}")
            continue

        paths = yaml_config.get("paths") or {}
        if paths.get("root_dir"):
            config["paths"]["root_dir"] = os.path.expanduser(paths["root_dir"])
        if "copy_on_import" in yaml_config:
            config["copy_on_import"] = bool(yaml_config["copy_on_import"])
        if "download_timeout" in yaml_config:
            config["download_timeout"] = yaml_config["download_timeout"]
        if yaml_config.get("logging"):
            config["logging"].update(yaml_config["logging"])
        break  # Use first found config

    return config


# ==============================================================================
# SETTINGS FILE
# ==============================================================================

def get_config_dir() -> Path:
    """Get the platform-appropriate config directory."""
    if sys.platform == "darwin":
        config_dir = Path.home() / "Library" / "Application Support" / APP_NAME
    elif sys.platform == "win32":
        appdata = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
        config_dir = Path(appdata) / APP_NAME
    else:
        # Linux and others - follow XDG spec
        xdg_config = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
        config_dir = Path(xdg_config) / APP_NAME

    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_settings_path() -> Path:
    """Get path to the settings file."""
    return get_config_dir() / "settings.json"


# Default settings. None means "not chosen by the user", so config/env apply.
DEFAULT_SETTINGS = {
    "root_dir": "",
    "copy_on_import": None,
    "download_timeout": None,
    "statuses": ["Todo", "In Progress", "Done"],
}

DEFAULT_ROOT = Path.home() / "Documents" / APP_NAME


class Settings:
    """Manage application settings with persistence.

    Args:
        settings_path: JSON file to use (defaults to the platform config dir)
        config: deployment config (defaults to load_config())
    """

    def __init__(self, settings_path: Optional[Path] = None, config: Optional[dict] = None):
        self.path = Path(settings_path) if settings_path else get_settings_path()
        self.config = config if config is not None else load_config()
        self._settings = json.loads(json.dumps(DEFAULT_SETTINGS))
        self._load()

    def _load(self):
        """Load settings from disk."""
        if self.path.exists():
            try:
                with open(self.path, "r") as f:
                    saved = json.load(f)
                # Merge with defaults (in case new settings were added)
                if isinstance(saved, dict):
                    self._settings.update(saved)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning(f"Could not load settings: {e}")

    def save(self):
        """Save settings to disk."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w") as f:
                json.dump(self._settings, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.warning(f"Could not save settings: {e}")

    def get(self, key: str, default=None):
        return self._settings.get(key, default)

    def set(self, key: str, value):
        self._settings[key] = value
        self.save()

    def update(self, updates: dict):
        """Update multiple settings at once and save."""
        self._settings.update(updates)
        self.save()

    def reset(self):
        """Reset all settings to defaults."""
        self._settings = json.loads(json.dumps(DEFAULT_SETTINGS))
        self.save()

    @property
    def root_dir(self) -> str:
        """Get the storage root.

        Priority: Saved setting > TAXBOX_ROOT > config.yaml > ~/Documents/TaxBox
        """
        saved = self._settings.get("root_dir")
        if saved:
            return saved
        env_root = os.environ.get("TAXBOX_ROOT")
        if env_root:
            return env_root
        configured = self.config.get("paths", {}).get("root_dir")
        if configured:
            return configured
        return str(DEFAULT_ROOT)

    @property
    def copy_on_import(self) -> bool:
        """Copy (True) or move (False) imported files."""
        saved = self._settings.get("copy_on_import")
        if saved is not None:
            return bool(saved)
        return bool(self.config.get("copy_on_import", True))

    @property
    def download_timeout(self) -> float:
        saved = self._settings.get("download_timeout")
        if saved is None:
            saved = self.config.get("download_timeout", 30)
        try:
            return float(saved)
        except (TypeError, ValueError):
            return 30.0

    @property
    def statuses(self) -> list[str]:
        saved = self._settings.get("statuses")
        if isinstance(saved, list) and saved:
            return [s for s in saved if isinstance(s, str)]
        return list(DEFAULT_SETTINGS["statuses"])

    def build_context(self):
        """Create the AppContext handed to the document store."""
        from document_store import AppContext

        return AppContext(
            root=Path(self.root_dir).expanduser(),
            copy_on_import=self.copy_on_import,
            download_timeout=self.download_timeout,
        )

    def build_registry(self):
        """Create a StatusRegistry that persists its changes to these settings."""
        from status_registry import StatusRegistry

        return StatusRegistry(self.statuses, on_change=lambda names: self.set("statuses", names))

    def to_dict(self) -> dict:
        """Export effective settings as a dictionary."""
        return {
            "root_dir": self.root_dir,
            "copy_on_import": self.copy_on_import,
            "download_timeout": self.download_timeout,
            "statuses": self.statuses,
        }


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Force reload settings from disk."""
    global _settings
    _settings = Settings()
    return _settings
