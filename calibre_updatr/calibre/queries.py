"""Read-only calibredb queries: candidate selection and single-book refresh."""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Mapping, Optional

from .. import logging_manager as log_mgr
from ..metadata import book_id, has_any_format, is_english_or_missing, normalize_languages
from ..runner import CommandRunner
from .library import CalibreError, CalibreLibrary

logger = log_mgr.get_logger().getChild("calibre.queries")

BOOK_FIELDS = (
    "id",
    "title",
    "authors",
    "publisher",
    "pubdate",
    "languages",
    "formats",
    "isbn",
    "identifiers",
    "tags",
    "comments",
    "cover",
    "last_modified",
)

_LIBRARY_BUSY_MARKERS = (
    "another calibre program such as calibre-server",
    "another calibre program such as calibre server",
)
_NO_MATCH_MARKER = "no books matching the search expression"

LIBRARY_BUSY_MESSAGE = (
    "calibredb refused to use the library because Calibre (or calibre-server) is running.\n"
    "Either close Calibre or pass --library-url pointing at the running Content Server."
)
REMOTE_NOT_FOUND_MESSAGE = (
    "calibredb returned Not Found for the library URL.\n"
    "Check the Content Server URL and library id, and avoid a trailing slash after the fragment.\n"
    'Example: --library-url "http://localhost:8081/#en_nonfiction"'
)


def _list_command(library: CalibreLibrary, search: str) -> list[str]:
    return library.command(
        "list",
        "--for-machine",
        "--fields",
        ",".join(BOOK_FIELDS),
        "--search",
        search,
    )


def _parse_records(stdout: str) -> List[Mapping[str, Any]]:
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise CalibreError(f"calibredb list returned invalid JSON: {exc}") from exc
    if not isinstance(data, list):
        raise CalibreError("Unexpected JSON shape from calibredb list")
    return [record for record in data if isinstance(record, Mapping)]


def search_expression(target_formats: Iterable[str]) -> str:
    return " or ".join(f"formats:{fmt}" for fmt in sorted(target_formats))


def list_candidate_books(
    runner: CommandRunner,
    library: CalibreLibrary,
    *,
    include_missing_language: bool,
    english_codes: Iterable[str],
    target_formats: Iterable[str],
) -> List[Mapping[str, Any]]:
    """Return books holding a target format whose language is English (or unset).

    An empty match is an empty list. Any other calibredb failure raises
    :class:`CalibreError`, with actionable text for a busy local library and
    for an unknown Content Server library.
    """

    targets = sorted({fmt.strip().lower() for fmt in target_formats if fmt.strip()})
    if not targets:
        raise CalibreError("No target formats provided.")
    english_codes = list(english_codes)

    result = runner.execute(_list_command(library, search_expression(targets)))
    if result.returncode != 0:
        stderr = result.stderr.lower()
        if any(marker in stderr for marker in _LIBRARY_BUSY_MARKERS):
            raise CalibreError(LIBRARY_BUSY_MESSAGE)
        if "not found" in stderr and library.is_remote:
            raise CalibreError(REMOTE_NOT_FOUND_MESSAGE)
        if _NO_MATCH_MARKER in stderr:
            return []
        logger.error(
            "calibredb list failed rc=%s stderr=%s",
            result.returncode,
            log_mgr.truncate(result.stderr, 500),
            extra={"event": "calibre.list.failed", "returncode": result.returncode},
        )
        raise CalibreError(f"calibredb list failed rc={result.returncode}")

    books: List[Mapping[str, Any]] = []
    for record in _parse_records(result.stdout):
        if book_id(record) is None:
            logger.warning(
                "Ignoring calibredb record without a numeric id: %r",
                record.get("id"),
                extra={"event": "calibre.list.invalid_id"},
            )
            continue
        if not has_any_format(record.get("formats"), targets):
            continue
        languages = normalize_languages(record.get("languages"))
        if not is_english_or_missing(languages, include_missing_language, english_codes):
            continue
        books.append(record)
    return books


def refresh_book(
    runner: CommandRunner, library: CalibreLibrary, book: int
) -> Optional[Mapping[str, Any]]:
    """Re-read one book after it was updated; ``None`` when calibredb has nothing."""

    result = runner.execute(_list_command(library, f"id:{book}"))
    if result.returncode != 0 or not result.stdout.strip():
        return None
    try:
        records = _parse_records(result.stdout)
    except CalibreError as exc:
        logger.warning(
            "Could not refresh book %s: %s", book, exc, extra={"event": "calibre.refresh.invalid"}
        )
        return None
    return records[0] if records else None


__all__ = [
    "BOOK_FIELDS",
    "LIBRARY_BUSY_MESSAGE",
    "REMOTE_NOT_FOUND_MESSAGE",
    "list_candidate_books",
    "refresh_book",
    "search_expression",
]
