"""
Column helpers shared by models.

Timestamps are stamped in Python as timezone-aware UTC so rows written
through SQLite (tests, local runs) and PostgreSQL compare the same way; the
server default only covers rows inserted outside the ORM.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, func


def generate_uuid() -> str:
    """Internal user ids are random UUID4 strings, never reused."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    """created_at / updated_at columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Row creation time (UTC)"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Last modification time (UTC)"
    )
