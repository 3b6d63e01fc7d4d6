"""Concord JSON Schema definitions and validation utilities.

Schemas:
    - settings.schema.json: Coordination settings (agents, tools, per-component defaults)

Usage:
    from concord.schemas import validate_settings

    with open("concord.json") as f:
        data = json.load(f)
    validate_settings(data)  # Raises jsonschema.ValidationError if invalid
"""

import json
from importlib.resources import files
from typing import Any

import jsonschema


def _load_schema(name: str) -> dict[str, Any]:
    """Load a JSON schema from the schemas package.

    Args:
        name: Schema filename (e.g., 'settings.schema.json')

    Returns:
        Parsed JSON schema as a dictionary
    """
    schema_text = files("concord.schemas").joinpath(name).read_text()
    result: dict[str, Any] = json.loads(schema_text)
    return result


def get_settings_schema() -> dict[str, Any]:
    return _load_schema("settings.schema.json")


def validate_settings(data: dict[str, Any]) -> None:
    """Validate a settings document against the schema.

    Raises:
        jsonschema.ValidationError: If validation fails
    """
    jsonschema.validate(data, get_settings_schema())


__all__ = [
    "get_settings_schema",
    "validate_settings",
]
