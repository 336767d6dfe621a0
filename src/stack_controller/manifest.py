"""Stack manifest loading with validation.

Used by the CLI to check a Stack manifest offline, before it is applied to a
cluster. File reads enforce a size limit.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, STACK_GROUP, STACK_KIND
from .errors import StackValidationError
from .models import Stack, select_source

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when a manifest cannot be loaded or fails validation."""

    pass


def load_manifest(path: Path) -> Stack:
    """Load and validate a Stack manifest from YAML.

    Args:
        path: Manifest file path.

    Returns:
        The validated Stack.

    Raises:
        ManifestLoadError: If the file cannot be read, is not a Stack, or
            fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

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

    kind = raw_data.get("kind")
    api_version = str(raw_data.get("apiVersion", ""))
    if kind != STACK_KIND or not api_version.startswith(f"{STACK_GROUP}/"):
        raise ManifestLoadError(
            f"Expected a {STACK_KIND} of group {STACK_GROUP}, got kind={kind!r} "
            f"apiVersion={api_version!r}: {path}"
        )

    try:
        stack = Stack.from_object(raw_data)
        select_source(stack.spec)
    except StackValidationError as e:
        raise ManifestLoadError(f"Validation failed for {path}: {e}") from e

    logger.info("Loaded Stack manifest", extra={"stack": stack.key, "path": str(path)})
    return stack
