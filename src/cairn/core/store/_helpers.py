"""Common helper functions for store modules."""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import ColumnElement, Table

E = TypeVar("E", bound=Enum)


def now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def generate_id() -> str:
    """Generate a unique ID (UUID4 hex)."""
    return uuid.uuid4().hex


def coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a string or enum value to the target enum type.

    Invalid values CRASH - no silent coercion.

    Raises:
        ValueError: If string is not a valid enum value
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)


def created_by(actor: str, timestamp: datetime) -> dict[str, Any]:
    """Housekeeping values for a freshly inserted row."""
    return {"created_at": timestamp, "created_by": actor}


def updated_by(actor: str, timestamp: datetime) -> dict[str, Any]:
    """Housekeeping values for an update."""
    return {"updated_at": timestamp, "updated_by": actor}


def live(table: Table, include_deleted: bool = False) -> list[ColumnElement[bool]]:
    """WHERE clauses that hide soft-deleted rows unless history is requested."""
    if include_deleted:
        return []
    return [table.c.deleted_at.is_(None)]


def as_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes for timezone-aware columns; they were written as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
