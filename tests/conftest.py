import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

import pytest

from calibre_updatr import logging_manager as log_mgr
from calibre_updatr.calibre import CalibreLibrary
from calibre_updatr.config_manager import UpdatrSettings
from calibre_updatr.config_manager.constants import ENV_PREFIX
from calibre_updatr.runner import TIMEOUT_RETURNCODE, CommandResult

CALIBREDB_SUBCOMMANDS = ("list", "set_metadata", "embed_metadata")

RICH_BOOK: Dict[str, Any] = {
    "id": 1,
    "title": "Dune",
    "authors": ["Frank Herbert"],
    "publisher": "Chilton Books",
    "pubdate": "1965-08-01T00:00:00+00:00",
    "languages": ["eng"],
    "isbn": "9780441013593",
    "identifiers": {"isbn": "9780441013593", "goodreads": "234225"},
    "tags": ["Science Fiction"],
    "comments": "<p>A desert planet.</p>",
    "cover": "/library/Frank Herbert/Dune (1)/cover.jpg",
    "formats": ["/library/Frank Herbert/Dune (1)/Dune - Frank Herbert.epub"],
}

SPARSE_BOOK: Dict[str, Any] = {
    "id": 2,
    "title": "Foundation",
    "authors": ["Isaac Asimov"],
    "publisher": "",
    "pubdate": "0101-01-01T00:00:00+00:00",
    "languages": [],
    "isbn": "",
    "identifiers": {},
    "tags": [],
    "comments": None,
    "cover": None,
    "formats": ["/library/Isaac Asimov/Foundation (2)/Foundation - Isaac Asimov.epub"],
}

REFRESHED_SPARSE_BOOK: Dict[str, Any] = {
    **SPARSE_BOOK,
    "publisher": "Gnome Press",
    "pubdate": "1951-06-01T00:00:00+00:00",
    "isbn": "9780553293357",
    "tags": ["Science Fiction"],
    "comments": "<p>Psychohistory.</p>",
    "cover": "/library/Isaac Asimov/Foundation (2)/cover.jpg",
}


def _result(
    command: Iterable[str],
    returncode: int = 0,
    stdout: str = "",
    stderr: str = "",
    *,
    timed_out: bool = False,
) -> CommandResult:
    return CommandResult(
        command=tuple(command),
        returncode=returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
    )


def _option(argv: List[str], flag: str) -> Optional[str]:
    if flag in argv:
        index = argv.index(flag)
        if index + 1 < len(argv):
            return argv[index + 1]
    return None


class FakeCalibre:
    """Scripted stand-in for :class:`CommandRunner` speaking calibredb and fetch-ebook-metadata."""

    def __init__(self, books: Optional[Iterable[Mapping[str, Any]]] = None) -> None:
        self.books: List[Mapping[str, Any]] = list(books or [])
        self.refreshed: Dict[int, Mapping[str, Any]] = {}
        self.list_failure: Optional[tuple[int, str]] = None
        self.fetch_outcome = "ok"
        self.fetch_writes_cover = True
        self.failing_steps: set[str] = set()
        self.raising_steps: Dict[str, Exception] = {}
        self.observers: List[Callable[[List[str]], None]] = []
        self.calls: List[List[str]] = []
        self.streamed: List[List[str]] = []

    # Runner interface -------------------------------------------------
    def execute(self, command, **_kwargs) -> CommandResult:
        argv = [str(part) for part in command]
        self.calls.append(argv)
        for observer in self.observers:
            observer(argv)
        step = self.step_of(argv)
        if step in self.raising_steps:
            raise self.raising_steps[step]
        if step in self.failing_steps:
            return _result(argv, 1, stderr=f"{step} exploded")
        if step == "list":
            return self._list(argv)
        return _result(argv)

    def execute_streaming(self, command, **_kwargs) -> CommandResult:
        argv = [str(part) for part in command]
        self.calls.append(argv)
        self.streamed.append(argv)
        for observer in self.observers:
            observer(argv)
        if "fetch" in self.raising_steps:
            raise self.raising_steps["fetch"]
        if self.fetch_outcome == "timeout":
            return _result(argv, TIMEOUT_RETURNCODE, timed_out=True)
        if self.fetch_outcome == "fail":
            return _result(argv, 1, stderr="No results found")
        if self.fetch_outcome == "ok":
            Path(_option(argv, "--opf")).write_text("<package/>", encoding="utf-8")
            if self.fetch_writes_cover:
                Path(_option(argv, "--cover")).write_bytes(b"\xff\xd8jpeg")
        return _result(argv)

    # Helpers ----------------------------------------------------------
    @staticmethod
    def step_of(argv: List[str]) -> str:
        sub = next((token for token in argv if token in CALIBREDB_SUBCOMMANDS), argv[0])
        if sub == "set_metadata" and "--field" in argv:
            return "cover"
        return sub

    def steps(self) -> List[str]:
        return [
            "fetch" if argv in self.streamed else self.step_of(argv) for argv in self.calls
        ]

    def _list(self, argv: List[str]) -> CommandResult:
        search = _option(argv, "--search") or ""
        if search.startswith("id:"):
            book_id = int(search[3:])
            record = self.refreshed.get(book_id)
            if record is None:
                record = next((book for book in self.books if book.get("id") == book_id), None)
            return _result(argv, stdout=json.dumps([record] if record else []))
        if self.list_failure is not None:
            returncode, stderr = self.list_failure
            return _result(argv, returncode, stderr=stderr)
        return _result(argv, stdout=json.dumps(self.books))


@pytest.fixture
def fake_calibre() -> FakeCalibre:
    return FakeCalibre()


@pytest.fixture
def local_library() -> CalibreLibrary:
    return CalibreLibrary(spec="/library")


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., UpdatrSettings]:
    """Build settings with fast defaults and a state file under ``tmp_path``."""

    def _factory(**groups: Dict[str, Any]) -> UpdatrSettings:
        payload: Dict[str, Any] = {
            "library": {"path": str(tmp_path)},
            "state": {"path": str(tmp_path / "state" / "state.json")},
            "policy": {"delay_between_fetches_seconds": 0},
        }
        for key, value in groups.items():
            payload[key] = {**payload.get(key, {}), **value}
        return UpdatrSettings.model_validate(payload)

    return _factory


class _ListHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(logging.DEBUG)
        self.records: List[logging.LogRecord] = []
        self.addFilter(log_mgr.LogContextFilter())

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def captured_logs():
    logger = log_mgr.get_logger()
    handler = _ListHandler()
    previous_level = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        yield handler.records
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous_level)


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch):
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)
    yield
    logger = log_mgr.get_logger()
    for handler in list(logger.handlers):
        if not isinstance(handler, _ListHandler):
            logger.removeHandler(handler)
            handler.close()
    logger.propagate = True
    log_mgr.clear_log_context()


@pytest.fixture
def rich_book() -> Dict[str, Any]:
    return copy.deepcopy(RICH_BOOK)


@pytest.fixture
def sparse_book() -> Dict[str, Any]:
    return copy.deepcopy(SPARSE_BOOK)


@pytest.fixture
def refreshed_sparse_book() -> Dict[str, Any]:
    return copy.deepcopy(REFRESHED_SPARSE_BOOK)
