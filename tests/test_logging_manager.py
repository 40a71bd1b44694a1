import json
import logging

import pytest

from calibre_updatr import logging_manager as log_mgr

pytestmark = pytest.mark.logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="calibre_updatr.pipeline",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Processing %s",
        args=("Dune",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_promotes_known_fields():
    payload = json.loads(
        log_mgr.JSONLogFormatter().format(
            _record(event="pipeline.item.start", book_id=7, attempt=2)
        )
    )

    assert payload["message"] == "Processing Dune"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "calibre_updatr.pipeline"
    assert payload["event"] == "pipeline.item.start"
    assert payload["book_id"] == 7
    assert payload["extra"] == {"attempt": 2}


def test_text_formatter_appends_fields():
    line = log_mgr.TextLogFormatter().format(_record(event="x", book_id=7, status="done"))
    assert "Processing Dune" in line
    assert line.endswith("book_id=7 status=done")


def test_context_filter_fills_missing_fields_only():
    with log_mgr.log_context(book_id=1, title="Dune", ignored=None):
        assert log_mgr.get_log_context() == {"book_id": 1, "title": "Dune"}
        record = _record(book_id=99)
        log_mgr.LogContextFilter().filter(record)

    assert record.book_id == 99
    assert record.title == "Dune"
    assert log_mgr.get_log_context() == {}


def test_nested_context_is_restored():
    with log_mgr.log_context(book_id=1):
        with log_mgr.log_context(title="Dune"):
            assert log_mgr.get_log_context() == {"book_id": 1, "title": "Dune"}
        assert log_mgr.get_log_context() == {"book_id": 1}


def test_setup_logging_emits_json(capsys):
    logger = log_mgr.setup_logging(logging.DEBUG, log_format="json")

    with log_mgr.log_context(book_id=3):
        logger.getChild("state").debug("saved", extra={"event": "state.saved"})

    line = capsys.readouterr().err.strip().splitlines()[-1]
    payload = json.loads(line)
    assert payload["event"] == "state.saved"
    assert payload["book_id"] == 3


def test_setup_logging_replaces_handlers(tmp_path):
    log_file = tmp_path / "logs" / "run.log"
    log_mgr.setup_logging(log_format="text", log_file=log_file)
    logger = log_mgr.setup_logging(logging.WARNING, log_format="text")

    assert len(logger.handlers) == 1
    assert logger.level == logging.WARNING
    assert log_file.parent.is_dir()


def test_setup_logging_writes_json_file(tmp_path):
    log_file = tmp_path / "run.log"
    logger = log_mgr.setup_logging(log_format="text", log_file=log_file)

    logger.info("hello", extra={"event": "test.hello"})
    for handler in logger.handlers:
        handler.flush()

    payload = json.loads(log_file.read_text(encoding="utf-8").splitlines()[0])
    assert payload["event"] == "test.hello"


@pytest.mark.parametrize(
    "value,expected",
    [
        (None, logging.INFO),
        ("debug", logging.DEBUG),
        (" WARN ", logging.WARNING),
        ("trace", logging.DEBUG),
        (logging.ERROR, logging.ERROR),
    ],
)
def test_parse_log_level(value, expected):
    assert log_mgr.parse_log_level(value) == expected


def test_parse_log_level_rejects_unknown_names():
    with pytest.raises(ValueError):
        log_mgr.parse_log_level("chatty")


def test_truncate():
    assert log_mgr.truncate(None, 10) == ""
    assert log_mgr.truncate("  error text  ", 5) == "error"
