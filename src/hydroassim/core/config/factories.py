# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Factory functions for building DataAssimilationConfig instances.

Supports both flat format (uppercase keys like LS_MAX_ITERATIONS) and
nested format (hierarchical structure like least_squares.max_iterations).
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from hydroassim.core.config.models.assimilation_config import DataAssimilationConfig
from hydroassim.core.exceptions import ConfigurationError

_SECTIONS = ('least_squares', 'observations', 'solver')


def _aliases(model: type) -> Dict[str, str]:
    """Map upper-case alias -> field name for a pydantic model class."""
    mapping = {}
    for name, field in model.model_fields.items():
        if field.alias:
            mapping[field.alias.upper()] = name
    return mapping


def _is_nested_config(raw: Dict[str, Any]) -> bool:
    return any(key in _SECTIONS for key in raw)


def transform_flat_to_nested(flat: Dict[str, Any]) -> Dict[str, Any]:
    """Distribute flat upper-case keys into their config sections.

    Unknown keys are kept at the top level (extra fields are allowed).
    """
    top_aliases = _aliases(DataAssimilationConfig)
    section_aliases = {
        section: _aliases(DataAssimilationConfig.model_fields[section].annotation)
        for section in _SECTIONS
    }

    nested: Dict[str, Any] = {}
    for key, value in flat.items():
        upper = str(key).upper()
        if upper in top_aliases:
            nested[top_aliases[upper]] = value
            continue
        for section, aliases in section_aliases.items():
            if upper in aliases:
                nested.setdefault(section, {})[aliases[upper]] = value
                break
        else:
            nested[key] = value
    return nested


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_assimilation_config(
    raw: Optional[Dict[str, Any]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> DataAssimilationConfig:
    """Validate a raw (flat or nested) dictionary into a config model.

    Args:
        raw: Configuration dictionary in flat or nested format.
        overrides: Programmatic overrides (flat or nested), applied last.

    Returns:
        Validated DataAssimilationConfig instance.

    Raises:
        ConfigurationError: If the configuration is invalid.
    """
    raw = raw or {}
    nested = raw if _is_nested_config(raw) else transform_flat_to_nested(raw)
    if overrides:
        if not _is_nested_config(overrides):
            overrides = transform_flat_to_nested(overrides)
        nested = _deep_merge(nested, overrides)

    try:
        return DataAssimilationConfig.model_validate(nested)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid data assimilation configuration:\n{e}") from e


def load_assimilation_config(
    path: Union[str, Path],
    overrides: Optional[Dict[str, Any]] = None,
) -> DataAssimilationConfig:
    """Load and validate a data assimilation configuration YAML file.

    Raises:
        FileNotFoundError: If the config file is missing.
        ConfigurationError: If the file cannot be parsed or is invalid.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            file_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse {path}: {e}") from e

    if not isinstance(file_config, dict):
        raise ConfigurationError(f"Configuration file {path} must contain a mapping")

    return build_assimilation_config(file_config, overrides)


def config_to_flat(config: BaseModel) -> Dict[str, Any]:
    """Flatten a config model back to upper-case alias keys."""
    flat: Dict[str, Any] = {}
    for name, field in type(config).model_fields.items():
        value = getattr(config, name)
        if isinstance(value, BaseModel):
            flat.update(config_to_flat(value))
        else:
            flat[(field.alias or name).upper()] = value
    return flat
