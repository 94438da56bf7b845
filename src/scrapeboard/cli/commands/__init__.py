"""CLI commands for Scrapeboard."""

from .config import config
from .jobs import jobs
from .logs import logs
from .plugins import plugins
from .preview import preview
from .serve import serve
from .workers import workers

__all__ = [
    "config",
    "jobs",
    "logs",
    "plugins",
    "preview",
    "serve",
    "workers",
]
