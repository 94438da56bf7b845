"""
Scrapeboard - a crawl job scheduling and worker-coordination engine.

The package drives a crawl dashboard with:
1. Plugin registry - crawl targets with field extraction rules and schedules
2. Job scheduler and worker pool - bounded, recoverable job execution
3. Event log - leveled, sequence-numbered event stream for the logs panel

State is persisted in SQLite; the dashboard talks to the aiohttp API.
"""

from .version import __version__

__all__ = ["__version__"]
