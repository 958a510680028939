"""
Base domain model with report JSON serialization.

Provides snake_case → camelCase conversion for the structured run report.
All reportable domain models should inherit from BaseDomainModel.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict


def to_camel_case(snake_str: str) -> str:
    """
    Convert snake_case to camelCase.

    Examples:
        >>> to_camel_case("stage_id")
        'stageId'
        >>> to_camel_case("first_failure")
        'firstFailure'
    """
    components = snake_str.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def _serialize(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, BaseDomainModel):
        return value.to_json()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_serialize(item) for item in value]
    if isinstance(value, dict):
        # Mapping keys are user data (artifact names, stage ids); keep them verbatim
        return {k: _serialize(v) for k, v in value.items()}
    return value


@dataclass
class BaseDomainModel:
    """
    Base class for reportable domain models.

    - to_json() serializes to camelCase keys
    - Enum values are serialized by value
    - Dates are serialized as ISO 8601 strings
    - Paths are serialized as strings
    """

    def to_json(self) -> Dict[str, Any]:
        """
        Serialize to report JSON (camelCase).

        Returns:
            Dictionary with camelCase keys, Enum values, ISO dates
        """
        return {to_camel_case(f.name): _serialize(getattr(self, f.name)) for f in fields(self)}

    def __str__(self) -> str:
        """String representation for logging."""
        field_strs = [f"{f.name}={getattr(self, f.name)!r}" for f in fields(self)]
        return f"{self.__class__.__name__}({', '.join(field_strs)})"
