"""Custom resource file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import API_GROUP_VERSION, KIND, MAX_RESOURCE_FILE_SIZE_BYTES
from .models import ContentCloud

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a custom resource file cannot be loaded or validated."""

    pass


def load_custom_resource(path: Path) -> ContentCloud:
    """Load and validate a ContentCloud custom resource from YAML.

    Args:
        path: YAML file holding one ContentCloud object.

    Returns:
        Validated custom resource.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Custom resource file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat custom resource file {path}: {e}") from e

    if file_size > MAX_RESOURCE_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Custom resource file exceeds maximum size of {MAX_RESOURCE_FILE_SIZE_BYTES} "
            f"bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read custom resource file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    return parse_custom_resource(raw_data, source=str(path))


def parse_custom_resource(raw_data: object, source: str = "<input>") -> ContentCloud:
    """Validate an already parsed custom resource mapping.

    Raises:
        SpecLoadError: If the data is not a ContentCloud or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Custom resource must be a YAML mapping: {source}")

    kind = raw_data.get("kind", KIND)
    if kind != KIND:
        raise SpecLoadError(f"Expected kind {KIND}, got {kind!r}: {source}")
    api_version = raw_data.get("apiVersion", API_GROUP_VERSION)
    if api_version != API_GROUP_VERSION:
        raise SpecLoadError(
            f"Expected apiVersion {API_GROUP_VERSION}, got {api_version!r}: {source}"
        )

    try:
        cr = ContentCloud.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {source}:\n{format_validation_errors(e)}"
        ) from e

    logger.info("Loaded custom resource '%s' from %s", cr.name, source)
    return cr


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors for readability, one per line."""
    errors = []
    for detail in error.errors():
        loc = ".".join(str(x) for x in detail["loc"])
        msg = detail["msg"]
        errors.append(f"  - {loc}: {msg}")
    return "\n".join(errors)
