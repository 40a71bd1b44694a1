"""calibredb and fetch-ebook-metadata integration."""

from .fetch import FetchResult, build_fetch_command, fetch_metadata
from .library import CalibreError, CalibreLibrary, OperationResult, failure_message
from .operations import apply_cover, apply_opf, embed_metadata
from .queries import BOOK_FIELDS, list_candidate_books, refresh_book, search_expression

__all__ = [
    "BOOK_FIELDS",
    "CalibreError",
    "CalibreLibrary",
    "FetchResult",
    "OperationResult",
    "apply_cover",
    "apply_opf",
    "build_fetch_command",
    "embed_metadata",
    "failure_message",
    "fetch_metadata",
    "list_candidate_books",
    "refresh_book",
    "search_expression",
]
