"""
Canonical JSON serialization, digests, and structured-attribute validation.

Two-phase approach for structured payloads:
1. Normalize: Convert datetime/date/bytes/Decimal to JSON-safe primitives (our code)
2. Serialize: Produce deterministic JSON per RFC 8785/JCS (rfc8785 package)

IMPORTANT: NaN and Infinity are strictly REJECTED, not silently converted.

Content digests of raw resource bytes are plain SHA-256 hex; they are the
stable external identity of a resource across re-ingestions.
"""

from __future__ import annotations

import base64
import hashlib
import json
import math
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

import rfc8785

from cairn.contracts.errors import ValidationError

# Version string stored with structured hashes
CANONICAL_VERSION = "sha256-rfc8785-v1"


def _normalize_value(obj: Any) -> Any:
    """Convert a single value to a JSON-safe primitive.

    Raises:
        ValueError: If value is a non-finite float or Decimal
    """
    if isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}. Use None for missing values, not NaN.")
        return obj

    if obj is None or isinstance(obj, str | int | bool):
        return obj

    if isinstance(obj, datetime):
        if obj.tzinfo is None:
            obj = obj.replace(tzinfo=UTC)
        return obj.astimezone(UTC).isoformat()

    if isinstance(obj, date):
        return obj.isoformat()

    if isinstance(obj, bytes):
        return {"__bytes__": base64.b64encode(obj).decode("ascii")}

    if isinstance(obj, Decimal):
        if not obj.is_finite():
            raise ValueError(f"Cannot canonicalize non-finite Decimal: {obj}. Use None for missing values, not NaN/Infinity.")
        return str(obj)

    return obj


def _normalize_for_canonical(data: Any) -> Any:
    """Recursively normalize a data structure for canonical JSON."""
    if isinstance(data, dict):
        return {k: _normalize_for_canonical(v) for k, v in data.items()}
    if isinstance(data, list | tuple):
        return [_normalize_for_canonical(v) for v in data]
    return _normalize_value(data)


def canonical_json(obj: Any) -> str:
    """Produce canonical JSON (no whitespace, sorted keys).

    Raises:
        ValueError: If data contains NaN, Infinity, or other non-finite values
        TypeError: If data contains types that cannot be serialized
    """
    normalized = _normalize_for_canonical(obj)
    result: bytes = rfc8785.dumps(normalized)
    return result.decode("utf-8")


def stable_hash(obj: Any, version: str = CANONICAL_VERSION) -> str:
    """SHA-256 hex digest of the canonical JSON of obj."""
    canonical = canonical_json(obj)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def content_digest(content: bytes) -> str:
    """SHA-256 hex digest of raw resource bytes."""
    return hashlib.sha256(content).hexdigest()


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a JSON value")


def validate_structured(value: Any, field: str) -> str | None:
    """Validate a free-form structured attribute and return its JSON text.

    Structured columns (front matter, diagnostics, arguments, transformation
    lists, elaboration) must parse as valid JSON or be absent. Mappings and
    sequences are serialized canonically; strings must already be JSON text.

    Args:
        value: None, a JSON string, or a JSON-serializable mapping/sequence/scalar
        field: Column name, reported in the error

    Returns:
        JSON text, or None when value is None

    Raises:
        ValidationError: If value is not well-formed structured data
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            json.loads(value, parse_constant=_reject_constant)
        except json.JSONDecodeError as e:
            raise ValidationError(f"{field} must be valid JSON or null: {e.msg} at position {e.pos}", field=field) from e
        except ValueError as e:
            raise ValidationError(f"{field} must be valid JSON or null: {e}", field=field) from e
        return value
    try:
        return canonical_json(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} is not serializable as structured data: {e}", field=field) from e
