"""
Base mixins and column types for database models.

Provides common functionality:
- UTCDateTime: timezone-aware column normalized to UTC whole seconds
- TimestampMixin: created_at, updated_at timestamps
- generate_uuid: UUID generation for string primary keys
- utc_now / normalize_instant: the single time base used for comparisons
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, TypeDecorator, func


# Stands in for an open-ended (null) end of a validity interval.
FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def normalize_instant(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize an instant to UTC with sub-second precision dropped.

    Naive datetimes are taken to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.replace(microsecond=0)


def utc_now() -> datetime:
    """Current instant in the normalized time base."""
    return normalize_instant(datetime.now(timezone.utc))


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime column.

    Values are normalized on the way in and tagged as UTC on the way out, so
    PostgreSQL (timestamptz) and SQLite (naive text) behave the same.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return normalize_instant(value)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        comment="Timestamp when record was last updated"
    )
