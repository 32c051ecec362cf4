"""
Base model classes and mixins.

- TimestampMixin: created_at, updated_at
- VersionMixin: version (for optimistic locking)
- UUIDMixin: UUID primary key
"""

from datetime import datetime
from uuid import UUID as PyUUID, uuid4

from sqlalchemy import DateTime, Integer, Uuid, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    # Common type annotations - all datetimes are timezone-aware
    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


# ============================================================
# TIMESTAMP MIXIN
# ============================================================

class TimestampMixin:
    """
    Mixin for created_at and updated_at timestamps.

    All timestamps are stored in UTC (timezone-aware). The flag engine
    sets both explicitly from its clock; the server defaults cover rows
    written by hand.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ============================================================
# VERSION MIXIN (Optimistic Locking)
# ============================================================

class VersionMixin:
    """
    Mixin for optimistic locking.

    Prevents lost updates when a person and the rollout scheduler edit
    the same flag. The version is incremented on each update.

    Usage:
        result = await db.execute(
            update(MyModel)
            .where(MyModel.id == record_id)
            .where(MyModel.version == expected_version)
            .values(data, version=MyModel.version + 1)
        )
        if result.rowcount == 0:
            raise ConflictError("Record was modified concurrently")
    """

    version: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )


# ============================================================
# PRIMARY KEY MIXIN
# ============================================================

class UUIDMixin:
    """
    Mixin for UUID primary key.

    Uses UUID v4 (random). Native UUID on PostgreSQL, CHAR(32) elsewhere.
    """

    id: Mapped[PyUUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
