from __future__ import annotations

import dataclasses
import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert models, tree nodes, enums and timestamps into JSON primitives.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json"))

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _normalize_for_jcs(getattr(value, f.name)) for f in dataclasses.fields(value)}

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, (set, frozenset)):
        return sorted(_normalize_for_jcs(item) for item in value)

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to deterministic, byte-for-byte reproducible JSON per RFC 8785."""
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def fingerprint(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
