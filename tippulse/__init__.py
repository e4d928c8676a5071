"""Tip event ingestion, incremental sync and period analytics."""

__version__ = "1.0.0"
