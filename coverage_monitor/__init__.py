"""Coverage monitor: ingestion, deduplication and approval of game coverage."""

__version__ = "0.1.0"
