from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Convert pydantic models, enums and datetimes into JSON primitives for rfc8785."""
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785.

    Raises:
        TypeError: If value contains an unsupported type.
    """
    return rfc8785.dumps(_normalize(value)).decode("utf-8")


def fingerprint(value: Any) -> str:
    """Return the sha256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
