from __future__ import annotations

import hashlib
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable

import rfc8785
from pydantic import BaseModel

from .models import StageProgressEntry

# JSON-primitive types that rfc8785 can serialize directly.
_PASSTHROUGH_TYPES = (bool, int, float, str, type(None))


def _normalize_for_jcs(value: Any) -> bool | int | float | str | None | list[Any] | dict[str, Any]:
    """Recursively convert records into the primitives ``rfc8785.dumps`` accepts.

    Pydantic models are dumped in JSON mode by alias, so progress views keep
    their camelCase wire names.

    Raises:
        TypeError: If value contains a type that cannot be converted to JSON.
    """
    if isinstance(value, _PASSTHROUGH_TYPES):
        return value
    if isinstance(value, BaseModel):
        return _normalize_for_jcs(value.model_dump(mode="json", by_alias=True))
    if isinstance(value, dict):
        return {str(k): _normalize_for_jcs(v) for k, v in value.items()}
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
    return rfc8785.dumps(_normalize_for_jcs(value)).decode("utf-8")


def progress_fingerprint(entries: Iterable[StageProgressEntry]) -> str:
    """SHA-256 of the canonical progress view.

    Two aggregations over unchanged job rows yield the same fingerprint, so
    pollers can skip re-rendering when nothing moved.
    """
    canonical = to_canonical_json(list(entries))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
