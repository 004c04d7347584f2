"""Common helper functions for store modules."""

from datetime import UTC, datetime
from enum import Enum
from typing import TypeVar

E = TypeVar("E", bound=Enum)


def now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from the database.

    SQLite has no timezone-aware storage: values written as aware UTC
    datetimes come back naive. PostgreSQL returns aware values, which are
    converted to UTC so comparisons never mix offsets.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def coerce_enum(value: str | E, enum_type: type[E]) -> E:
    """Coerce a string or enum value to the target enum type.

    The registry is our own data: invalid values crash, no silent coercion.

    Raises:
        ValueError: If string is not a valid enum value
    """
    if isinstance(value, enum_type):
        return value
    return enum_type(value)
