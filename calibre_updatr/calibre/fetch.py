"""Drive fetch-ebook-metadata to produce an OPF document and a cover image."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from .. import logging_manager as log_mgr
from ..metadata import authors_argument, book_title, normalize_identifiers
from ..runner import CommandRunner
from .library import failure_message

logger = log_mgr.get_logger().getChild("calibre.fetch")


@dataclass(frozen=True, slots=True)
class FetchResult:
    ok: bool
    message: str
    timed_out: bool = False


def build_fetch_command(
    book: Mapping[str, Any],
    opf_path: Path,
    cover_path: Path,
    *,
    executable: str = "fetch-ebook-metadata",
) -> list[str]:
    """Look up by ISBN when there is one, otherwise by identifiers, title and authors."""

    argv = [executable, "--opf", str(opf_path), "--cover", str(cover_path)]
    isbn = str(book.get("isbn") or "").strip()
    if isbn:
        argv.extend(["--isbn", isbn])
        return argv

    for key, value in normalize_identifiers(book.get("identifiers")).items():
        argv.extend(["--identifier", f"{key}:{value}"])
    title = book_title(book)
    if title:
        argv.extend(["--title", title])
    authors = authors_argument(book.get("authors"))
    if authors:
        argv.extend(["--authors", authors])
    return argv


def fetch_metadata(
    runner: CommandRunner,
    book: Mapping[str, Any],
    opf_path: Path,
    cover_path: Path,
    *,
    timeout_seconds: float,
    heartbeat_seconds: Optional[float] = None,
    executable: str = "fetch-ebook-metadata",
) -> FetchResult:
    command = build_fetch_command(book, opf_path, cover_path, executable=executable)
    logger.info(
        "Starting fetch-ebook-metadata (timeout %ss)",
        timeout_seconds,
        extra={"event": "calibre.fetch.start", "timeout_seconds": timeout_seconds},
    )
    result = runner.execute_streaming(
        command, timeout=timeout_seconds, heartbeat=heartbeat_seconds
    )
    if result.timed_out:
        return FetchResult(
            False, f"fetch-ebook-metadata timed out after {timeout_seconds:g}s", timed_out=True
        )
    if result.returncode != 0:
        return FetchResult(False, failure_message("fetch-ebook-metadata", result))
    try:
        produced = opf_path.stat().st_size > 0
    except FileNotFoundError:
        produced = False
    if not produced:
        return FetchResult(False, "fetch-ebook-metadata produced no OPF")
    return FetchResult(True, "fetched")


__all__ = ["FetchResult", "build_fetch_command", "fetch_metadata"]
