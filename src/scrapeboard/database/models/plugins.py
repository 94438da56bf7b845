"""SQLAlchemy model for stored plugin definitions."""

from typing import Any, Dict

from sqlalchemy import Boolean, Index, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class PluginRow(Base):
    """A plugin definition.

    The full definition lives in ``definition``; the remaining columns are
    copies used for filtering.
    """

    __tablename__ = "plugins"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_type: Mapped[str] = mapped_column(String(16), nullable=False)
    schedule: Mapped[str] = mapped_column(String(128), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    definition: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)

    __table_args__ = (
        Index("idx_plugins_enabled", "enabled"),
        Index("idx_plugins_name", "name"),
    )
