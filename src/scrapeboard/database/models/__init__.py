"""SQLAlchemy models for the Scrapeboard database."""

from .base import Base
from .plugins import PluginRow
from .jobs import JobRow
from .records import RecordRow

__all__ = [
    "Base",
    "PluginRow",
    "JobRow",
    "RecordRow",
]
