"""Bulk Calibre metadata updater and format embedder."""

__version__ = "0.4.0"
