"""SQLAlchemy model for extracted records."""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import DateTime, Index, Integer, JSON, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class RecordRow(Base):
    """One extracted record. Rows are only ever inserted."""

    __tablename__ = "extracted_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), nullable=False)
    plugin_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    fields: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    extracted_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_records_plugin_extracted", "plugin_id", "extracted_at"),
        Index("idx_records_job", "job_id"),
    )
