"""Declarative base plus the column mixins shared by queue-owned tables."""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

EXTERNAL_TABLE_INFO = {"external": True}
"""Table ``info`` marker for diary-application tables; migrations skip them."""


class Base(DeclarativeBase):
    pass


class UUIDPrimaryKeyMixin:
    """UUID key generated client-side, with ``uuid_generate_v4()`` as fallback for raw inserts."""

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.uuid_generate_v4(),
    )


class CreatedAtMixin:
    """Append-only rows (error log) only record when they were written."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class TimestampMixin(CreatedAtMixin):
    """Mutable rows (queue jobs) also track their last state change."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
