"""Shared constants for the configuration manager package."""
from __future__ import annotations

from pathlib import Path

DEFAULT_CONFIG_PATH = Path("config.toml")
ENV_PREFIX = "CALIBRE_UPDATR_"

DEFAULT_FORMATS = ("epub", "pdf")
DEFAULT_ENGLISH_CODES = ("en", "eng", "en-us", "en-gb")
DEFAULT_MIN_SCORE_TO_SKIP_FETCH = 6
DEFAULT_DELAY_BETWEEN_FETCHES_SECONDS = 0.35
DEFAULT_FETCH_TIMEOUT_SECONDS = 180.0
DEFAULT_FETCH_HEARTBEAT_SECONDS = 15.0
DEFAULT_CALIBREDB = "calibredb"
DEFAULT_FETCH_TOOL = "fetch-ebook-metadata"
VALID_LOG_FORMATS = {"json", "text"}

__all__ = [
    "DEFAULT_CALIBREDB",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_DELAY_BETWEEN_FETCHES_SECONDS",
    "DEFAULT_ENGLISH_CODES",
    "DEFAULT_FETCH_HEARTBEAT_SECONDS",
    "DEFAULT_FETCH_TIMEOUT_SECONDS",
    "DEFAULT_FETCH_TOOL",
    "DEFAULT_FORMATS",
    "DEFAULT_MIN_SCORE_TO_SKIP_FETCH",
    "ENV_PREFIX",
    "VALID_LOG_FORMATS",
]
