"""Enterprise storage root: discovery and validation."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ENTERPRISE_PATH_ENV_VAR = "MEMKEEP_ENTERPRISE_PATH"
MANAGED_SETTINGS_FILENAME = "managed-settings.json"


@dataclass
class PathValidation:
    valid: bool
    error: str | None = None


def _settings_locations(search_path: Path | None) -> list[Path]:
    locations: list[Path] = []
    if search_path is not None:
        if search_path.suffix == ".json":
            locations.append(search_path)
        else:
            locations.append(search_path / MANAGED_SETTINGS_FILENAME)
    locations.append(Path.home() / ".memkeep" / MANAGED_SETTINGS_FILENAME)
    locations.append(Path("/etc/memkeep") / MANAGED_SETTINGS_FILENAME)
    return locations


def find_managed_settings(search_path: Path | None = None) -> Path | None:
    for location in _settings_locations(search_path):
        if location.is_file():
            return location
    return None


def read_managed_settings(settings_path: Path) -> dict | None:
    try:
        data = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to parse %s: %s", settings_path, exc)
        return None
    return data if isinstance(data, dict) else None


def get_enterprise_path(
    configured: Path | None = None,
    search_path: Path | None = None,
) -> Path | None:
    """Locate the enterprise root.

    Order: the ``MEMKEEP_ENTERPRISE_PATH`` environment variable, an explicit
    configured path, then the ``env`` section of managed-settings.json.
    """
    env_path = os.getenv(ENTERPRISE_PATH_ENV_VAR)
    if env_path:
        logger.debug("Enterprise path from environment: %s", env_path)
        return Path(env_path).expanduser()
    if configured is not None:
        return configured

    settings_path = find_managed_settings(search_path)
    if settings_path is None:
        logger.debug("No %s found", MANAGED_SETTINGS_FILENAME)
        return None
    settings = read_managed_settings(settings_path)
    if not settings:
        return None
    env_section = settings.get("env")
    value = env_section.get(ENTERPRISE_PATH_ENV_VAR) if isinstance(env_section, dict) else None
    if not value:
        return None
    logger.debug("Enterprise path from %s: %s", settings_path, value)
    return Path(str(value)).expanduser()


def validate_enterprise_path(path: Path) -> PathValidation:
    """Check that the enterprise root exists, is a directory and is read/writable."""
    try:
        if not path.exists():
            return PathValidation(False, f"Enterprise path does not exist: {path}")
        if not path.is_dir():
            return PathValidation(False, f"Enterprise path is not a directory: {path}")
    except OSError as exc:
        return PathValidation(False, f"Enterprise path is inaccessible: {exc}")
    if not os.access(path, os.R_OK | os.W_OK):
        return PathValidation(False, f"Enterprise path is inaccessible: {path}")
    return PathValidation(True)
