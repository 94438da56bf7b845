"""SQLite persistence for the Scrapeboard system."""
