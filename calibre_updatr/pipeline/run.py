"""Top-level update run: validate tools, select candidates, process each book."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from .. import logging_manager as log_mgr
from ..calibre import CalibreLibrary, list_candidate_books
from ..config_manager import UpdatrSettings
from ..metadata import book_id, book_title, fingerprint, snapshot
from ..runner import CommandRunner, stderr_signature_check
from ..state import (
    ItemState,
    ItemStatus,
    StateFile,
    StateFileError,
    default_state_path,
    get_item_state,
    load_state,
    put_item_state,
    save_state,
)
from .processor import PipelineContext, process_book
from .summary import ItemOutcome, ItemResult, RunSummary

logger = log_mgr.get_logger().getChild("pipeline.run")

XVFB_RUN = "xvfb-run"


class SetupError(RuntimeError):
    """Raised when the host cannot run an update (missing tools, no library)."""


def validate_setup(
    settings: UpdatrSettings, *, which: Optional[Callable[[str], Optional[str]]] = None
) -> CalibreLibrary:
    """Check prerequisites and return the library the run will target."""

    which = which or shutil.which
    required = [settings.calibredb.executable, settings.fetch.executable]
    if settings.fetch.use_xvfb:
        required.append(XVFB_RUN)
    for tool in required:
        if which(tool) is None:
            raise SetupError(f"Missing required tool on PATH: {tool}")

    spec = settings.library.location()
    if not spec:
        raise SetupError("Missing library (set library.path or library.url, or pass --library)")
    if not spec.startswith(("http://", "https://")):
        spec = str(Path(spec).expanduser())
    library = CalibreLibrary(
        spec=spec,
        username=settings.content_server.username,
        password=(
            settings.content_server.password.get_secret_value()
            if settings.content_server.password
            else None
        ),
        executable=settings.calibredb.executable,
    )
    if not library.is_remote and not Path(spec).is_dir():
        raise SetupError(f"Library path is not a directory: {spec}")

    if not settings.formats.names:
        raise SetupError("No target formats configured (formats.list is empty)")
    return library


def build_runner(settings: UpdatrSettings) -> CommandRunner:
    return CommandRunner(
        env_mode=settings.calibredb.env_mode,
        catalog_executable=settings.calibredb.executable,
        fetch_executable=settings.fetch.executable,
        headless_fetch=settings.fetch.headless,
        headless_env=settings.fetch.headless_env,
        fetch_use_xvfb=settings.fetch.use_xvfb,
        debug_catalog_env=settings.calibredb.debug_env,
        clean_prefixes=settings.calibredb.clean_env_prefixes,
        clean_retry_check=stderr_signature_check(settings.calibredb.clean_retry_signatures),
    )


def resolve_state_path(settings: UpdatrSettings) -> Path:
    if settings.state.path:
        return Path(settings.state.path).expanduser()
    return default_state_path()


def _record_exception(
    ctx: PipelineContext, bid: int, book: Mapping[str, Any], exc: Exception
) -> None:
    previous = get_item_state(ctx.state, bid) or ItemState(status=ItemStatus.STARTED)
    failed = previous.failed(fingerprint(snapshot(book)), f"exception: {exc}")
    put_item_state(ctx.state, bid, failed)


def _process_guarded(ctx: PipelineContext, book: Mapping[str, Any]) -> ItemResult:
    bid = book_id(book)
    try:
        return process_book(ctx, book)
    except StateFileError:
        raise
    except Exception as exc:  # one broken book must not end the run
        logger.error(
            "[fail] exception: %s",
            log_mgr.truncate(str(exc), 500),
            exc_info=logger.isEnabledFor(logging.DEBUG),
            extra={"event": "pipeline.item.exception"},
        )
        if bid is not None and not ctx.dry_run:
            _record_exception(ctx, bid, book, exc)
        return ItemResult(bid, ItemOutcome.FAILED, "exception", f"exception: {exc}")


def run_update(
    settings: UpdatrSettings,
    *,
    library: Optional[CalibreLibrary] = None,
    runner: Optional[CommandRunner] = None,
    state_path: Optional[Path] = None,
    workdir: Optional[Path] = None,
) -> RunSummary:
    """Process every candidate book once and return the tally.

    Books are handled one at a time. A failure while handling one book is
    recorded against that book and the run moves on; only errors reading or
    writing the state file abort it.
    """

    if library is None:
        library = validate_setup(settings)
    if runner is None:
        runner = build_runner(settings)
    if state_path is None:
        state_path = resolve_state_path(settings)

    policy = settings.policy
    state: StateFile = load_state(state_path)

    logger.info(
        "Library: %s", library.spec, extra={"event": "run.library", "remote": library.is_remote}
    )
    logger.info("State: %s", state_path, extra={"event": "run.state_path"})
    if policy.dry_run:
        logger.info("Dry run: no changes will be made", extra={"event": "run.dry_run"})

    books = list_candidate_books(
        runner,
        library,
        include_missing_language=policy.include_missing_language,
        english_codes=policy.english_codes,
        target_formats=settings.formats.names,
    )
    logger.info(
        "Candidates: %d", len(books), extra={"event": "run.candidates", "count": len(books)}
    )

    summary = RunSummary()
    started = time.perf_counter()
    with ExitStack() as stack:
        if workdir is None:
            workdir = Path(stack.enter_context(tempfile.TemporaryDirectory(prefix="calibre-updatr-")))
        ctx = PipelineContext(
            runner=runner,
            library=library,
            state=state,
            state_path=Path(state_path),
            workdir=Path(workdir),
            target_formats=tuple(settings.formats.names),
            scoring=settings.scoring,
            reprocess_on_metadata_change=policy.reprocess_on_metadata_change,
            delay_between_fetches_seconds=policy.delay_between_fetches_seconds,
            fetch_timeout_seconds=settings.fetch.timeout_seconds,
            fetch_heartbeat_seconds=settings.fetch.heartbeat_seconds or None,
            fetch_executable=settings.fetch.executable,
            dry_run=policy.dry_run,
        )
        for index, book in enumerate(books, start=1):
            with log_mgr.log_context(book_id=book_id(book), title=book_title(book)):
                logger.info(
                    "[%d/%d] %s",
                    index,
                    len(books),
                    book_title(book) or "(untitled)",
                    extra={"event": "pipeline.item.start"},
                )
                result = _process_guarded(ctx, book)
            summary = summary.add(result)
            if not policy.dry_run:
                save_state(state_path, state)

    logger.info(
        "Summary: ok=%d failed=%d skipped=%d",
        summary.succeeded,
        summary.failed,
        summary.skipped,
        extra={
            "event": "run.summary",
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            **summary.as_dict(),
        },
    )
    return summary


__all__ = [
    "SetupError",
    "build_runner",
    "resolve_state_path",
    "run_update",
    "validate_setup",
]
