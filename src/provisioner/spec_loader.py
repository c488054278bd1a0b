"""Declaration and mapping loading with validation.

All file operations enforce size limits. Every input is validated here, at the
boundary, before the graph builder sees it and before any provider call.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_MAPPING_ENTRIES, MAX_MAPPING_FILE_SIZE_BYTES, MAX_SPEC_FILE_SIZE_BYTES
from .errors import InvalidMappingError, SpecLoadError
from .models import Declaration

logger = logging.getLogger(__name__)


def _read_bounded(path: Path, limit: int, error_cls: type[Exception], what: str) -> str:
    if not path.exists():
        raise error_cls(f"{what} not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise error_cls(f"Failed to stat {what} {path}: {e}") from e

    if file_size > limit:
        raise error_cls(f"{what} exceeds maximum size of {limit} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise error_cls(f"Failed to read {what} {path}: {e}") from e


def load_declaration(spec_path: Path) -> Declaration:
    """Load and validate a resource declaration from YAML.

    Args:
        spec_path: Path to the declaration file.

    Returns:
        Validated declaration.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    content = _read_bounded(spec_path, MAX_SPEC_FILE_SIZE_BYTES, SpecLoadError, "Declaration")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Declaration must contain a YAML mapping: {spec_path}")

    # Support both flat format and the apiVersion/kind/spec wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    try:
        declaration = Declaration.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info(
        "Loaded declaration",
        extra={"path": str(spec_path), "resource_count": len(declaration.resources)},
    )
    return declaration


def parse_mapping(content: str, source: str) -> dict[str, str]:
    """Parse a flat JSON object of string keys to string values.

    Raises:
        InvalidMappingError: On invalid JSON, non-object input, duplicate or
            empty keys, non-string values, or too many entries.
    """

    def reject_duplicates(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for key, value in pairs:
            if key in result:
                raise InvalidMappingError(f"Duplicate key '{key}' in mapping {source}")
            result[key] = value
        return result

    try:
        data = json.loads(content, object_pairs_hook=reject_duplicates)
    except json.JSONDecodeError as e:
        raise InvalidMappingError(f"Invalid JSON in mapping {source}: {e}") from e

    if not isinstance(data, dict):
        raise InvalidMappingError(f"Mapping must be a JSON object: {source}")

    if len(data) > MAX_MAPPING_ENTRIES:
        raise InvalidMappingError(
            f"Mapping {source} has {len(data)} entries, exceeding limit of {MAX_MAPPING_ENTRIES}"
        )

    for key, value in data.items():
        if not key:
            raise InvalidMappingError(f"Empty key in mapping {source}")
        if not isinstance(value, str):
            raise InvalidMappingError(
                f"Mapping {source} value for '{key}' must be a string, "
                f"got {type(value).__name__}"
            )

    return data


def load_mapping(mapping_path: Path) -> dict[str, str]:
    """Load a keyed data source from a JSON file."""
    content = _read_bounded(
        mapping_path, MAX_MAPPING_FILE_SIZE_BYTES, InvalidMappingError, "Mapping file"
    )
    mapping = parse_mapping(content, str(mapping_path))
    logger.info(
        "Loaded mapping",
        extra={"path": str(mapping_path), "entry_count": len(mapping)},
    )
    return mapping


def load_mappings(declaration: Declaration, base_dir: Path) -> dict[str, dict[str, str]]:
    """Load every mapping a declaration names, relative to ``base_dir``."""
    return {
        name: load_mapping((base_dir / relative).resolve())
        for name, relative in declaration.mappings.items()
    }
