"""Normalized metadata snapshots, fingerprints and the good-enough score."""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from pathlib import PurePath
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

if TYPE_CHECKING:  # pragma: no cover - for static analysis only
    from .config_manager.settings import ScoringSettings

# Calibre stores "no publication date" as the year 101.
UNDEFINED_DATE_PREFIX = "0101-01-01"

_AUTHOR_SEPARATORS = ("&",)
_LIST_SEPARATORS = (",", ";")


@dataclass(frozen=True)
class Snapshot:
    """Order-independent projection of the fields that decide metadata quality."""

    title: str = ""
    authors: List[str] = field(default_factory=list)
    publisher: str = ""
    pubdate: str = ""
    languages: List[str] = field(default_factory=list)
    isbn: str = ""
    identifiers: Dict[str, str] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    comments_present: bool = False
    cover_present: bool = False


def _stable_copy(value: Any) -> Any:
    """Return a deterministically ordered, JSON-serializable copy of ``value``."""

    if isinstance(value, Mapping):
        return {key: _stable_copy(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_stable_copy(item) for item in value]
    return value


def stable_json(value: Any) -> str:
    return json.dumps(_stable_copy(value), ensure_ascii=False, separators=(",", ":"))


def _text(value: Any) -> str:
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, (int, float)):
        return str(value)
    return ""


def _split(text: str, separators: Sequence[str]) -> List[str]:
    parts = [text]
    for separator in separators:
        parts = [piece for part in parts for piece in part.split(separator)]
    return [piece.strip() for piece in parts if piece.strip()]


def _string_list(value: Any, separators: Sequence[str]) -> List[str]:
    """Reduce a list or delimited string to an order-preserving list of trimmed strings."""

    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [item for item in (_text(entry) for entry in value) if item]
    text = _text(value)
    if not text:
        return []
    return _split(text, separators)


def normalize_languages(value: Any) -> List[str]:
    return [language.lower() for language in _string_list(value, _LIST_SEPARATORS)]


def normalize_identifiers(value: Any) -> Dict[str, str]:
    if not isinstance(value, Mapping):
        return {}
    identifiers: Dict[str, str] = {}
    for raw_key, raw_value in value.items():
        key = str(raw_key).strip().lower()
        if isinstance(raw_value, str):
            text = raw_value.strip()
        elif raw_value is None:
            text = ""
        else:
            text = stable_json(raw_value)
        if key and text:
            identifiers[key] = text
    return identifiers


def normalize_formats(value: Any) -> List[str]:
    """Return lower-case format names from names (``"EPUB"``) or file paths."""

    formats: List[str] = []
    for entry in _string_list(value, _LIST_SEPARATORS):
        suffix = PurePath(entry).suffix
        name = (suffix[1:] if suffix else entry).strip().lower()
        if name:
            formats.append(name)
    return formats


def has_any_format(value: Any, targets: Iterable[str]) -> bool:
    wanted = {target.lower() for target in targets}
    return any(fmt in wanted for fmt in normalize_formats(value))


def is_english_or_missing(
    languages: Sequence[str],
    include_missing_language: bool,
    english_codes: Iterable[str],
) -> bool:
    """Language filter: English by code, ``en-*`` prefix or the word ``english``."""

    if not languages:
        return include_missing_language
    codes = {code.replace("_", "-").strip().lower() for code in english_codes}
    for language in languages:
        candidate = language.replace("_", "-").strip().lower()
        if candidate in codes or candidate.startswith("en-") or candidate == "english":
            return True
    return False


def _pubdate(value: Any) -> str:
    text = _text(value)
    if text.startswith(UNDEFINED_DATE_PREFIX):
        return ""
    return text


def _present(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def snapshot(book: Mapping[str, Any]) -> Snapshot:
    """Build the :class:`Snapshot` of a calibredb record. Never raises on odd shapes.

    Only languages and identifier keys are lower-cased; title, authors,
    publisher and tags keep their case so a casing fix counts as a change.
    """

    return Snapshot(
        title=_text(book.get("title")),
        authors=_string_list(book.get("authors"), _AUTHOR_SEPARATORS),
        publisher=_text(book.get("publisher")),
        pubdate=_pubdate(book.get("pubdate")),
        languages=normalize_languages(book.get("languages")),
        isbn=_text(book.get("isbn")),
        identifiers=normalize_identifiers(book.get("identifiers")),
        tags=_string_list(book.get("tags"), _LIST_SEPARATORS),
        comments_present=_present(book.get("comments")),
        cover_present=_present(book.get("cover")),
    )


def fingerprint(snap: Snapshot) -> str:
    """SHA-256 of the key-sorted compact JSON form of ``snap``."""

    return hashlib.sha256(stable_json(asdict(snap)).encode("utf-8")).hexdigest()


def score_good_enough(snap: Snapshot, scoring: "ScoringSettings") -> Tuple[int, List[str]]:
    """Return the weighted completeness score and the list of missing fields."""

    score = 0
    missing: List[str] = []

    checks = (
        (bool(snap.title), scoring.title_weight, "missing title"),
        (bool(snap.authors), scoring.authors_weight, "missing authors"),
        (bool(snap.publisher), scoring.publisher_weight, "missing publisher"),
        (bool(snap.pubdate), scoring.pubdate_weight, "missing pubdate"),
    )
    for present, weight, reason in checks:
        if present:
            score += weight
        else:
            missing.append(reason)

    # ISBN and other identifiers share one bonus slot; the larger applicable weight wins.
    identifier_bonus = max(
        scoring.isbn_weight if snap.isbn else 0,
        scoring.identifiers_weight if snap.identifiers else 0,
    )
    if snap.isbn or snap.identifiers:
        score += identifier_bonus
    else:
        missing.append("missing identifiers/isbn")

    for present, weight, reason in (
        (bool(snap.tags), scoring.tags_weight, "missing tags"),
        (snap.comments_present, scoring.comments_weight, "missing description/comments"),
        (snap.cover_present, scoring.cover_weight, "missing cover"),
    ):
        if present:
            score += weight
        else:
            missing.append(reason)

    return score, missing


def is_good_enough(snap: Snapshot, score: int, scoring: "ScoringSettings") -> bool:
    if score < scoring.min_score_to_skip_fetch:
        return False
    if scoring.require_title and not snap.title:
        return False
    if scoring.require_authors and not snap.authors:
        return False
    return True


def authors_argument(value: Any) -> str:
    """Authors joined the way fetch-ebook-metadata expects them."""

    return ", ".join(_string_list(value, _AUTHOR_SEPARATORS))


def book_title(book: Mapping[str, Any]) -> str:
    return _text(book.get("title"))


def book_id(book: Mapping[str, Any]) -> Optional[int]:
    value = book.get("id")
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


__all__ = [
    "Snapshot",
    "UNDEFINED_DATE_PREFIX",
    "authors_argument",
    "book_id",
    "book_title",
    "fingerprint",
    "has_any_format",
    "is_english_or_missing",
    "is_good_enough",
    "normalize_formats",
    "normalize_identifiers",
    "normalize_languages",
    "score_good_enough",
    "snapshot",
    "stable_json",
]
