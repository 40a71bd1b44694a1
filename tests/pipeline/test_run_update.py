import json
from pathlib import Path

import pytest

from calibre_updatr.calibre import CalibreError, CalibreLibrary
from calibre_updatr.pipeline import SetupError, build_runner, run_update, validate_setup
from calibre_updatr.pipeline import run as run_mod
from calibre_updatr.runner import CalibredbEnvMode
from calibre_updatr.state import (
    ItemState,
    ItemStatus,
    StateFile,
    StateFileError,
    get_item_state,
    load_state,
    put_item_state,
    save_state,
)

pytestmark = pytest.mark.pipeline


@pytest.fixture
def run(fake_calibre, local_library, make_settings, tmp_path: Path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    state_path = tmp_path / "state.json"

    def _run(settings=None, **kwargs):
        return run_update(
            settings or make_settings(),
            library=local_library,
            runner=fake_calibre,
            state_path=kwargs.get("state_path", state_path),
            workdir=workdir,
        )

    _run.state_path = state_path
    return _run


def test_mixed_run_summary(run, fake_calibre, rich_book, sparse_book):
    done_before = dict(rich_book, id=3, title="Children of Dune")
    state = StateFile()
    put_item_state(
        state, 3, ItemState(status=ItemStatus.DONE, last_hash="old", last_ok_utc="2024-01-01")
    )
    save_state(run.state_path, state)
    fake_calibre.books = [rich_book, sparse_book, done_before]
    fake_calibre.fetch_outcome = "fail"

    summary = run()

    assert (summary.succeeded, summary.failed, summary.skipped) == (1, 1, 1)
    saved = load_state(run.state_path)
    assert get_item_state(saved, 1).status is ItemStatus.EMBEDDED_ONLY
    assert get_item_state(saved, 2).status is ItemStatus.FAILED
    assert get_item_state(saved, 3).last_hash == "old"


def test_no_candidates(run, fake_calibre):
    fake_calibre.list_failure = (1, "No books matching the search expression")
    summary = run()
    assert summary.total == 0


def test_unexpected_exception_fails_only_that_book(run, fake_calibre, rich_book):
    second = dict(rich_book, id=5)
    fake_calibre.books = [rich_book, second]
    calls = {"count": 0}

    def explode_once(argv):
        if "embed_metadata" in argv:
            calls["count"] += 1
            if calls["count"] == 1:
                raise RuntimeError("boom")

    fake_calibre.observers.append(explode_once)

    summary = run()

    assert (summary.succeeded, summary.failed) == (1, 1)
    saved = load_state(run.state_path)
    failed = get_item_state(saved, 1)
    assert failed.status is ItemStatus.FAILED
    assert failed.message == "exception: boom"
    assert failed.fail_count == 1
    assert get_item_state(saved, 5).status is ItemStatus.EMBEDDED_ONLY


def test_corrupt_state_aborts_before_work(run, fake_calibre, rich_book):
    run.state_path.write_text("{broken", encoding="utf-8")
    fake_calibre.books = [rich_book]

    with pytest.raises(StateFileError):
        run()
    assert fake_calibre.calls == []


def test_unwritable_state_aborts(run, fake_calibre, rich_book, tmp_path: Path):
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    fake_calibre.books = [rich_book]

    with pytest.raises(StateFileError):
        run(state_path=blocker / "state.json")


def test_catalog_failure_propagates(run, fake_calibre):
    fake_calibre.list_failure = (1, "Another calibre program such as calibre-server is running")
    with pytest.raises(CalibreError):
        run()


def test_dry_run_writes_no_state(run, fake_calibre, make_settings, rich_book, sparse_book):
    fake_calibre.books = [rich_book, sparse_book]

    summary = run(make_settings(policy={"dry_run": True}))

    assert summary.succeeded == 2
    assert fake_calibre.steps() == ["list"]
    assert not run.state_path.exists()


def test_resume_after_interruption(run, fake_calibre, rich_book, sparse_book):
    state = StateFile()
    put_item_state(state, 1, ItemState(status=ItemStatus.STARTED, last_hash="h", fail_count=0))
    put_item_state(state, 2, ItemState(status=ItemStatus.EMBEDDED_ONLY, last_hash="h"))
    save_state(run.state_path, state)
    fake_calibre.books = [rich_book, sparse_book]

    summary = run()

    assert (summary.succeeded, summary.skipped) == (1, 1)
    assert get_item_state(load_state(run.state_path), 1).status is ItemStatus.EMBEDDED_ONLY


def test_second_run_is_idempotent(run, fake_calibre, rich_book):
    fake_calibre.books = [rich_book]
    run()
    first = json.loads(run.state_path.read_text(encoding="utf-8"))["books"]

    summary = run()

    assert summary.skipped == 1
    assert json.loads(run.state_path.read_text(encoding="utf-8"))["books"] == first
    assert fake_calibre.steps() == ["list", "embed_metadata", "list"]


def test_default_workdir_is_temporary(fake_calibre, local_library, make_settings, tmp_path):
    summary = run_update(
        make_settings(),
        library=local_library,
        runner=fake_calibre,
        state_path=tmp_path / "state.json",
    )
    assert summary.total == 0


def test_validate_setup_requires_tools(make_settings):
    with pytest.raises(SetupError) as excinfo:
        validate_setup(make_settings(), which=lambda tool: None)
    assert "calibredb" in str(excinfo.value)


def test_validate_setup_uses_path_lookup(make_settings, monkeypatch):
    monkeypatch.setattr(run_mod.shutil, "which", lambda tool: None)
    with pytest.raises(SetupError):
        validate_setup(make_settings())


def test_validate_setup_requires_xvfb_when_enabled(make_settings):
    present = {"calibredb", "fetch-ebook-metadata"}
    settings = make_settings(fetch={"use_xvfb": True})
    with pytest.raises(SetupError) as excinfo:
        validate_setup(settings, which=lambda tool: tool if tool in present else None)
    assert "xvfb-run" in str(excinfo.value)


def test_validate_setup_local_and_remote(make_settings, tmp_path: Path):
    which = lambda tool: f"/usr/bin/{tool}"  # noqa: E731

    library = validate_setup(make_settings(), which=which)
    assert library == CalibreLibrary(spec=str(tmp_path))

    remote = validate_setup(
        make_settings(
            library={"url": "http://localhost:8081/#books/"},
            content_server={"username": "reader", "password": "pw"},
        ),
        which=which,
    )
    assert remote.spec == "http://localhost:8081/#books"
    assert remote.password == "pw"

    with pytest.raises(SetupError):
        validate_setup(make_settings(library={"path": str(tmp_path / "missing")}), which=which)

    with pytest.raises(SetupError):
        validate_setup(make_settings(library={"path": None}), which=which)

    with pytest.raises(SetupError):
        validate_setup(make_settings(formats={"list": []}), which=which)


def test_build_runner_maps_settings(make_settings):
    runner = build_runner(
        make_settings(
            calibredb={"env_mode": "override", "executable": "/opt/calibre/calibredb"},
            fetch={"use_xvfb": True, "headless": False},
        )
    )
    assert runner.env_mode is CalibredbEnvMode.OVERRIDE
    assert runner.catalog_executable == "/opt/calibre/calibredb"
    assert runner.fetch_use_xvfb is True
    assert runner.headless_fetch is False
