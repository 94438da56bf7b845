"""Base SQLAlchemy model with common functionality."""

from datetime import datetime

from sqlalchemy import DateTime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ...foundation.clock import utcnow


class Base(DeclarativeBase):
    """Base class for all database models."""

    # Naive UTC, matching what SQLite hands back
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        nullable=False,
        doc="Timestamp when the row was created"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        doc="Timestamp when the row was last updated"
    )

    def __repr__(self) -> str:
        class_name = self.__class__.__name__
        attrs = []
        if hasattr(self, 'id'):
            attrs.append(f"id={getattr(self, 'id')!r}")
        for attr in ['plugin_id', 'job_id', 'name']:
            value = getattr(self, attr, None)
            if value:
                attrs.append(f"{attr}={value!r}")
                break
        return f"{class_name}({', '.join(attrs)})"
