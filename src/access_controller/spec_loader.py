"""Service connection definition loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ServiceConnectionSpec

logger = logging.getLogger(__name__)

SPEC_FILE_PATTERNS: tuple[str, ...] = ("*.yml", "*.yaml")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_yaml(spec_path: Path) -> Any:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e


def _format_validation_error(spec_path: Path, name: str, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {name}.{loc}: {item['msg']}")
    error_list = "\n".join(errors)
    return f"Validation failed for {spec_path}:\n{error_list}"


def parse_spec_file(spec_path: Path) -> dict[str, ServiceConnectionSpec]:
    """Parse one YAML file into service connection definitions.

    The file is a mapping of service connection name to definition,
    optionally wrapped in a Kubernetes-style ``apiVersion``/``kind``/``spec``
    envelope.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    raw_data = _read_yaml(spec_path)

    if raw_data is None:
        logger.warning("Skipping empty spec file %s", spec_path)
        return {}

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec file must contain a YAML mapping: {spec_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
    else:
        spec_data = raw_data

    connections: dict[str, ServiceConnectionSpec] = {}
    for name, definition in spec_data.items():
        if not isinstance(definition, dict):
            raise SpecLoadError(
                f"Service connection '{name}' in {spec_path} must be a mapping"
            )
        try:
            connections[str(name)] = ServiceConnectionSpec.model_validate(
                {**definition, "name": str(name)}
            )
        except ValidationError as e:
            raise SpecLoadError(_format_validation_error(spec_path, str(name), e)) from e

    return connections


def load_service_connections(config_dir: Path) -> dict[str, ServiceConnectionSpec]:
    """Load all service connection definitions from a directory.

    Files are read in name order so runs are reproducible.

    Args:
        config_dir: Directory containing ``*.yml`` / ``*.yaml`` files.

    Returns:
        Mapping of service connection name to validated definition.

    Raises:
        SpecLoadError: If any file is invalid or a name is defined twice.
    """
    if not config_dir.is_dir():
        raise SpecLoadError(f"Config directory not found: {config_dir}")

    spec_paths = sorted(
        {path for pattern in SPEC_FILE_PATTERNS for path in config_dir.glob(pattern)}
    )

    connections: dict[str, ServiceConnectionSpec] = {}
    origins: dict[str, Path] = {}

    for spec_path in spec_paths:
        for name, spec in parse_spec_file(spec_path).items():
            # Azure DevOps service connection names are case-insensitive
            key = name.lower()
            if key in origins:
                raise SpecLoadError(
                    f"Service connection '{name}' is defined in both "
                    f"{origins[key]} and {spec_path}"
                )
            connections[name] = spec
            origins[key] = spec_path

    logger.info(
        "Loaded %d service connection(s) from %d file(s) in %s",
        len(connections),
        len(spec_paths),
        config_dir,
    )
    return connections
