from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert models, enums, sets and dates into JSON primitives.

    Sets are emitted as sorted lists so that set-valued fields (contract
    prerequisites, evidence refs) canonicalize independently of insertion order.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value

    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json", by_alias=True))

    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}

    if isinstance(value, (set, frozenset)):
        return [_normalize_for_jcs(item) for item in sorted(value, key=str)]

    if isinstance(value, (list, tuple)):
        return [_normalize_for_jcs(item) for item in value]

    if isinstance(value, Enum):
        return _normalize_for_jcs(value.value)

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    raise TypeError(
        f"Cannot serialize type {type(value).__name__} to canonical JSON. "
        f"Convert to a JSON-compatible type first."
    )


def to_canonical_json(value: Any) -> str:
    """Serialize a value to byte-for-byte reproducible JSON per RFC 8785."""
    normalized = _normalize_for_jcs(value)
    return rfc8785.dumps(normalized).decode("utf-8")


def content_digest(value: Any, *, length: int = 8) -> str:
    """Return a short hex digest of the canonical JSON form of *value*.

    Used for every content-derived identifier (question, blocker, slug
    qualifier) so identical inputs always produce identical ids.
    """
    if length < 4 or length > 64:
        raise ValueError(f"digest length must be within [4, 64], got: {length}")
    digest = hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()
    return digest[:length]
