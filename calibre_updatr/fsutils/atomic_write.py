"""Crash-safe file replacement helpers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class AtomicWriteError(RuntimeError):
    """Raised when a file cannot be replaced atomically."""


def atomic_write_text(path: Path | str, payload: str, *, encoding: str = "utf-8") -> Path:
    """Write ``payload`` to ``path`` through a fsynced temporary sibling.

    The temporary file lives in the destination directory so the final
    :func:`os.replace` never crosses a filesystem boundary. Readers observe
    either the previous file or the complete new one.
    """

    destination = Path(path)
    temp_path: Path | None = None
    try:
        destination.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding=encoding,
            dir=destination.parent,
            prefix=f".{destination.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            temp_path = Path(handle.name)
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, destination)
    except OSError as exc:
        if temp_path is not None:
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise AtomicWriteError(f"Failed to write {destination}: {exc}") from exc
    return destination


__all__ = ["AtomicWriteError", "atomic_write_text"]
