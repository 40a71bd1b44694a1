"""calibredb mutations: apply an OPF, set a cover, embed metadata into formats."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

from .. import logging_manager as log_mgr
from ..runner import CommandRunner
from .library import CalibreLibrary, OperationResult, failure_message

logger = log_mgr.get_logger().getChild("calibre.operations")


def _is_empty_file(path: Path) -> bool:
    try:
        return path.stat().st_size == 0
    except FileNotFoundError:
        return True


def apply_opf(
    runner: CommandRunner, library: CalibreLibrary, book: int, opf_path: Path
) -> OperationResult:
    logger.info("Applying fetched metadata", extra={"event": "calibre.apply.opf", "book_id": book})
    result = runner.execute(library.command("set_metadata", str(book), str(opf_path)))
    if result.returncode != 0:
        return OperationResult(False, failure_message("set_metadata", result))
    return OperationResult(True, "metadata applied")


def apply_cover(
    runner: CommandRunner, library: CalibreLibrary, book: int, cover_path: Path
) -> OperationResult:
    """Set the downloaded cover; a missing or empty file is a successful no-op."""

    if _is_empty_file(cover_path):
        return OperationResult(True, "no cover downloaded")
    logger.info("Applying fetched cover", extra={"event": "calibre.apply.cover", "book_id": book})
    result = runner.execute(
        library.command("set_metadata", str(book), "--field", f"cover:{cover_path}")
    )
    if result.returncode != 0:
        return OperationResult(False, failure_message("cover set", result))
    return OperationResult(True, "cover applied")


def embed_metadata(
    runner: CommandRunner,
    library: CalibreLibrary,
    book: int,
    target_formats: Iterable[str],
) -> OperationResult:
    """Write the library metadata into the book files of ``target_formats`` only."""

    formats = sorted({fmt.strip().upper() for fmt in target_formats if fmt.strip()})
    if not formats:
        return OperationResult(False, "no target formats")
    logger.info("Embedding metadata", extra={"event": "calibre.embed", "book_id": book})
    result = runner.execute(
        library.command("embed_metadata", "--only-formats", ",".join(formats), str(book))
    )
    if result.returncode != 0:
        return OperationResult(False, failure_message("embed_metadata", result))
    return OperationResult(True, "embedded")


__all__ = ["apply_cover", "apply_opf", "embed_metadata"]
