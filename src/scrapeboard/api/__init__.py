"""HTTP API layer for Scrapeboard."""

from .app import ENGINE_KEY, RequestContext, create_app

__all__ = ["ENGINE_KEY", "RequestContext", "create_app"]
