"""VirtualDatabase manifest loading from disk.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import CRD_KIND, MAX_MANIFEST_FILE_SIZE_BYTES
from .models import VirtualDatabase

logger = logging.getLogger(__name__)


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def format_validation_error(e: ValidationError) -> str:
    """Format pydantic validation errors one per line."""
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def load_manifest(path: Path) -> VirtualDatabase:
    """Load and validate a VirtualDatabase manifest from YAML.

    The manifest may be a full Kubernetes object (apiVersion/kind/metadata/
    spec) or only the spec, in which case the file stem becomes the name.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated resource.

    Raises:
        ManifestLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
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

    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind", CRD_KIND)
        if kind != CRD_KIND:
            raise ManifestLoadError(f"Expected kind {CRD_KIND}, got {kind}: {path}")
        data = raw_data
    else:
        # Bare spec: synthesize the envelope
        data = {"metadata": {"name": path.stem}, "spec": raw_data}

    try:
        vdb = VirtualDatabase.model_validate(data)
    except ValidationError as e:
        raise ManifestLoadError(
            f"Validation failed for {path}:\n{format_validation_error(e)}"
        ) from e

    logger.info("Loaded manifest '%s' from %s", vdb.metadata.name, path)
    return vdb
