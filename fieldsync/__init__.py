"""Offline cache-and-sync layer for field data collection."""

__version__ = "0.1.0"
