from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

_JSON_SCALARS = (bool, int, str, type(None))


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def normalize(value: Any) -> Any:
    """Reduce engine values to the JSON primitives RFC 8785 accepts.

    Pydantic models are dumped in JSON mode, enums collapse to their values,
    datetimes become UTC ISO-8601 strings and sets are sorted so iteration
    order can never leak into the canonical form.

    Args:
        value: Any engine value, including pydantic models and nested containers.

    Returns:
        A structure of str, int, bool, None, list and dict suitable for rfc8785.dumps.

    Raises:
        TypeError: For floats, bytes, non-string mapping keys and any type
            without a canonical JSON form.
    """
    if isinstance(value, Enum):
        return normalize(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return normalize(value.model_dump(mode="json"))
    if isinstance(value, datetime):
        return _utc_iso(value)
    if isinstance(value, dict):
        normalized: dict[str, Any] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"canonical JSON keys must be strings, got {type(key).__name__}: {key!r}")
            normalized[key] = normalize(item)
        return normalized
    if isinstance(value, (list, tuple)):
        return [normalize(item) for item in value]
    if isinstance(value, (set, frozenset)):
        return sorted(normalize(item) for item in value)
    if isinstance(value, float):
        # Audit payloads only carry integer amounts.
        raise TypeError(f"floats are not allowed in canonical audit payloads: {value!r}")
    if isinstance(value, bytes):
        raise TypeError("raw bytes cannot be canonicalized; record a presence flag or hex digest instead")
    raise TypeError(f"no canonical JSON form for {type(value).__name__}")


def canonical_bytes(value: Any) -> bytes:
    """Serialize ``value`` to RFC 8785 (JCS) bytes: sorted keys, no whitespace, UTF-8."""
    return rfc8785.dumps(normalize(value))


def to_canonical_json(value: Any) -> str:
    return canonical_bytes(value).decode("utf-8")
