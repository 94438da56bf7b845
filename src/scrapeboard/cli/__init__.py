"""Command-line interface for Scrapeboard."""

from .main import cli, main

__all__ = ["cli", "main"]
