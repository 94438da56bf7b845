"""Version information for the Scrapeboard package."""

__version__ = "0.1.0"
