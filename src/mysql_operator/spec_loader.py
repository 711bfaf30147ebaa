"""Manifest file loading with validation.

All file reads enforce a size limit before parsing. Only single-document
YAML mappings are accepted.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_MANIFEST_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when a manifest file cannot be read or parsed."""

    pass


def load_manifest(path: Path) -> dict[str, Any]:
    """Load a custom resource manifest from YAML.

    Args:
        path: Manifest file path.

    Returns:
        The parsed manifest mapping.

    Raises:
        FileNotFoundError: If the file does not exist.
        ManifestLoadError: If the file is too large, unreadable or not a
            YAML mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Manifest file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ManifestLoadError(f"Failed to stat manifest file {path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise ManifestLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestLoadError(f"Failed to read manifest file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ManifestLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest file must contain a YAML mapping: {path}")

    logger.debug("Loaded manifest from %s", path)
    return raw_data


def dump_manifest(manifest: dict[str, Any]) -> str:
    """Render a manifest as block-style YAML."""
    return yaml.safe_dump(manifest, sort_keys=False, default_flow_style=False)
