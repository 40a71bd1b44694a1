"""Filesystem utility helpers for calibre-updatr."""

from __future__ import annotations

from .atomic_write import AtomicWriteError, atomic_write_text

__all__ = ["AtomicWriteError", "atomic_write_text"]
