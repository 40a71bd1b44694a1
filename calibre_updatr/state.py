"""Durable per-book processing state persisted as a single JSON document."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import logging_manager
from .fsutils import AtomicWriteError, atomic_write_text

_LOGGER = logging_manager.get_logger().getChild("state")

STATE_VERSION = 1
APP_DIRNAME = "calibre-updatr"
STATE_FILENAME = "state.json"


class StateFileError(RuntimeError):
    """Raised when the state file cannot be read, parsed or written."""


class ItemStatus(str, Enum):
    """Processing status recorded for a book."""

    STARTED = "started"
    DONE = "done"
    EMBEDDED_ONLY = "embedded_only"
    SKIPPED = "skipped_good_enough"
    FAILED = "failed"
    FAILED_PERMANENT = "failed_permanent"

    @property
    def is_resting(self) -> bool:
        return self in RESTING_STATUSES


RESTING_STATUSES = frozenset(
    {
        ItemStatus.DONE,
        ItemStatus.SKIPPED,
        ItemStatus.EMBEDDED_ONLY,
        ItemStatus.FAILED_PERMANENT,
    }
)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _optional_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass
class ItemState:
    """Last known processing outcome of one book."""

    status: ItemStatus
    last_hash: str = ""
    last_attempt_utc: str = ""
    last_ok_utc: Optional[str] = None
    message: Optional[str] = None
    fail_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "last_hash": self.last_hash,
            "last_attempt_utc": self.last_attempt_utc,
            "last_ok_utc": self.last_ok_utc,
            "message": self.message,
            "fail_count": self.fail_count,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ItemState":
        return cls(
            status=ItemStatus(str(data.get("status") or ItemStatus.STARTED.value)),
            last_hash=str(data.get("last_hash") or ""),
            last_attempt_utc=str(data.get("last_attempt_utc") or ""),
            last_ok_utc=_optional_text(data.get("last_ok_utc")),
            message=_optional_text(data.get("message")),
            fail_count=int(data.get("fail_count") or 0),
        )

    def succeeded(self, status: ItemStatus, fingerprint: str, message: str) -> "ItemState":
        """Return the successor record for a successful attempt."""

        now = now_iso()
        return replace(
            self,
            status=status,
            last_hash=fingerprint,
            last_attempt_utc=now,
            last_ok_utc=now,
            message=message,
            fail_count=0,
        )

    def failed(self, fingerprint: str, message: str, *, permanent: bool = False) -> "ItemState":
        """Return the successor record for a failed attempt; ``last_ok_utc`` carries over."""

        return replace(
            self,
            status=ItemStatus.FAILED_PERMANENT if permanent else ItemStatus.FAILED,
            last_hash=fingerprint,
            last_attempt_utc=now_iso(),
            message=message,
            fail_count=self.fail_count + 1,
        )


def started_state(previous: Optional[ItemState], fingerprint: str) -> ItemState:
    """Record that processing of a book has begun."""

    return ItemState(
        status=ItemStatus.STARTED,
        last_hash=fingerprint,
        last_attempt_utc=now_iso(),
        last_ok_utc=previous.last_ok_utc if previous else None,
        message="started",
        fail_count=previous.fail_count if previous else 0,
    )


@dataclass
class StateFile:
    """Versioned container of all book states keyed by the Calibre book id."""

    version: int = STATE_VERSION
    updated_at_utc: Optional[str] = None
    books: Dict[str, ItemState] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "updated_at_utc": self.updated_at_utc,
            "books": {key: self.books[key].to_dict() for key in sorted(self.books, key=_id_sort_key)},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StateFile":
        books = data.get("books")
        if books is None:
            books = {}
        if not isinstance(books, Mapping):
            raise ValueError("'books' must be an object")
        for key, value in books.items():
            if not isinstance(value, Mapping):
                raise ValueError(f"state for book {key!r} must be an object")
        version = int(data.get("version") or 0)
        return cls(
            # Version 0 files predate versioning and share the same layout.
            version=version or STATE_VERSION,
            updated_at_utc=data.get("updated_at_utc"),
            books={str(key): ItemState.from_dict(value) for key, value in books.items()},
        )


def _id_sort_key(key: str) -> tuple[int, int | str]:
    return (0, int(key)) if key.isdigit() else (1, key)


def default_state_path() -> Path:
    """Return ``$XDG_CACHE_HOME/calibre-updatr/state.json`` (or under ``~/.cache``)."""

    cache_home = os.environ.get("XDG_CACHE_HOME")
    if cache_home:
        base = Path(cache_home)
    else:
        home = os.environ.get("HOME")
        if not home:
            raise StateFileError(
                "Unable to determine cache directory (set XDG_CACHE_HOME or HOME)"
            )
        base = Path(home) / ".cache"
    return base / APP_DIRNAME / STATE_FILENAME


def load_state(path: Path | str) -> StateFile:
    """Load the state file, returning an empty store when it does not exist yet."""

    state_path = Path(path)
    if not state_path.exists():
        _LOGGER.debug("No state file at %s; starting fresh", state_path)
        return StateFile()
    try:
        with state_path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, Mapping):
            raise ValueError("top-level value must be an object")
        return StateFile.from_dict(payload)
    except OSError as exc:
        raise StateFileError(f"Failed to read state file {state_path}: {exc}") from exc
    except (ValueError, TypeError) as exc:
        raise StateFileError(f"Failed to parse state file {state_path}: {exc}") from exc


def save_state(path: Path | str, state: StateFile) -> Path:
    """Stamp ``updated_at_utc`` and atomically replace the state file."""

    state.updated_at_utc = now_iso()
    payload = json.dumps(state.to_dict(), ensure_ascii=False, indent=2) + "\n"
    try:
        written = atomic_write_text(path, payload)
    except AtomicWriteError as exc:
        raise StateFileError(str(exc)) from exc
    _LOGGER.debug("State persisted to %s", written, extra={"event": "state.saved"})
    return written


def get_item_state(state: StateFile, book_id: int | str) -> Optional[ItemState]:
    return state.books.get(str(book_id))


def put_item_state(state: StateFile, book_id: int | str, item: ItemState) -> None:
    state.books[str(book_id)] = item


__all__ = [
    "ItemState",
    "ItemStatus",
    "RESTING_STATUSES",
    "STATE_VERSION",
    "StateFile",
    "StateFileError",
    "default_state_path",
    "get_item_state",
    "load_state",
    "now_iso",
    "put_item_state",
    "save_state",
    "started_state",
]
