"""TrendBot: trend detection, deduplication and scheduling pipeline."""

__version__ = "0.1.0"
