"""Per-book state machine: skip, embed only, or fetch -> apply -> embed -> refresh."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from .. import logging_manager as log_mgr
from ..calibre import (
    CalibreLibrary,
    apply_cover,
    apply_opf,
    embed_metadata,
    fetch_metadata,
    refresh_book,
)
from ..config_manager import ScoringSettings
from ..metadata import (
    Snapshot,
    book_id,
    fingerprint,
    is_good_enough,
    score_good_enough,
    snapshot,
)
from ..runner import CommandRunner
from ..state import (
    ItemState,
    ItemStatus,
    StateFile,
    get_item_state,
    put_item_state,
    save_state,
    started_state,
)
from .summary import ItemOutcome, ItemResult

logger = log_mgr.get_logger().getChild("pipeline")


@dataclass
class PipelineContext:
    """Everything the state machine needs, resolved once per run."""

    runner: CommandRunner
    library: CalibreLibrary
    state: StateFile
    state_path: Path
    workdir: Path
    target_formats: Sequence[str]
    scoring: ScoringSettings
    reprocess_on_metadata_change: bool = False
    delay_between_fetches_seconds: float = 0.0
    fetch_timeout_seconds: float = 180.0
    fetch_heartbeat_seconds: Optional[float] = None
    fetch_executable: str = "fetch-ebook-metadata"
    dry_run: bool = False

    def persist(self, book: int, item: ItemState) -> None:
        """Record ``item`` and write the state file before anything else happens."""

        if self.dry_run:
            return
        put_item_state(self.state, book, item)
        save_state(self.state_path, self.state)


def skip_reason(
    previous: Optional[ItemState], current_hash: str, reprocess_on_metadata_change: bool
) -> Optional[str]:
    """Why a book can be left alone, or ``None`` when it needs work."""

    if previous is None or not previous.status.is_resting:
        return None
    if not reprocess_on_metadata_change:
        return "already processed"
    if previous.last_hash == current_hash:
        return "already processed for current metadata hash"
    return None


def process_book(ctx: PipelineContext, book: Mapping[str, Any]) -> ItemResult:
    """Run one book through the pipeline; failures of external tools are recorded, not raised."""

    bid = book_id(book)
    if bid is None:
        raise ValueError(f"missing book id in record {book.get('id')!r}")

    snap = snapshot(book)
    current_hash = fingerprint(snap)
    previous = get_item_state(ctx.state, bid)

    reason = skip_reason(previous, current_hash, ctx.reprocess_on_metadata_change)
    if reason is not None:
        logger.info("[skip] %s", reason, extra={"event": "pipeline.item.skip"})
        return ItemResult(bid, ItemOutcome.SKIPPED, "skip", reason, previous.status)

    score, missing = score_good_enough(snap, ctx.scoring)
    good_enough = is_good_enough(snap, score, ctx.scoring)

    if ctx.dry_run:
        action = "embed" if good_enough else "fetch+apply+embed"
        logger.info(
            "[dry-run] would %s into %s (score %s)",
            action,
            ",".join(ctx.target_formats),
            score,
            extra={"event": "pipeline.item.dry_run", "score": score},
        )
        return ItemResult(bid, ItemOutcome.DONE, f"dry-run:{action}", f"score {score}")

    current = started_state(previous, current_hash)
    ctx.persist(bid, current)

    if good_enough:
        logger.info(
            "[good-enough] embedding only (score %s)",
            score,
            extra={"event": "pipeline.item.embed_only", "score": score},
        )
        return _embed_only(ctx, bid, current, current_hash)

    logger.info(
        "[work] fetching metadata (score %s; %s)",
        score,
        ", ".join(missing),
        extra={"event": "pipeline.item.fetch", "score": score},
    )
    return _fetch_apply_embed(ctx, book, bid, current, snap, current_hash)


def _fail(
    ctx: PipelineContext,
    bid: int,
    current: ItemState,
    current_hash: str,
    step: str,
    message: str,
    *,
    permanent: bool = False,
) -> ItemResult:
    failed = current.failed(current_hash, message, permanent=permanent)
    ctx.persist(bid, failed)
    logger.warning(
        "[fail] %s: %s",
        step,
        log_mgr.truncate(message, 500),
        extra={"event": "pipeline.item.failed", "step": step, "status": failed.status.value},
    )
    return ItemResult(bid, ItemOutcome.FAILED, step, message, failed.status)


def _embed_only(
    ctx: PipelineContext, bid: int, current: ItemState, current_hash: str
) -> ItemResult:
    embedded = embed_metadata(ctx.runner, ctx.library, bid, ctx.target_formats)
    if not embedded.ok:
        return _fail(ctx, bid, current, current_hash, "embed", embedded.message)

    done = current.succeeded(ItemStatus.EMBEDDED_ONLY, current_hash, "good enough; embedded")
    ctx.persist(bid, done)
    logger.info("[done] good enough; embedded", extra={"event": "pipeline.item.done"})
    return ItemResult(bid, ItemOutcome.DONE, "embed", done.message or "", done.status)


def _scratch_paths(workdir: Path, bid: int) -> tuple[Path, Path]:
    opf_path = workdir / f"{bid}.opf"
    cover_path = workdir / f"{bid}.cover.jpg"
    for leftover in (opf_path, cover_path):
        leftover.unlink(missing_ok=True)
    return opf_path, cover_path


def _fetch_apply_embed(
    ctx: PipelineContext,
    book: Mapping[str, Any],
    bid: int,
    current: ItemState,
    snap: Snapshot,
    current_hash: str,
) -> ItemResult:
    opf_path, cover_path = _scratch_paths(ctx.workdir, bid)

    fetched = fetch_metadata(
        ctx.runner,
        book,
        opf_path,
        cover_path,
        timeout_seconds=ctx.fetch_timeout_seconds,
        heartbeat_seconds=ctx.fetch_heartbeat_seconds,
        executable=ctx.fetch_executable,
    )
    if not fetched.ok:
        # Timed-out fetches are not retried on later runs.
        return _fail(
            ctx, bid, current, current_hash, "fetch", fetched.message, permanent=fetched.timed_out
        )

    if ctx.delay_between_fetches_seconds > 0:
        time.sleep(ctx.delay_between_fetches_seconds)

    applied = apply_opf(ctx.runner, ctx.library, bid, opf_path)
    if not applied.ok:
        return _fail(ctx, bid, current, current_hash, "set_metadata", applied.message)

    cover = apply_cover(ctx.runner, ctx.library, bid, cover_path)
    if not cover.ok:
        logger.warning(
            "[warn] cover: %s",
            log_mgr.truncate(cover.message, 500),
            extra={"event": "pipeline.item.cover_failed"},
        )

    embedded = embed_metadata(ctx.runner, ctx.library, bid, ctx.target_formats)
    if not embedded.ok:
        return _fail(ctx, bid, current, current_hash, "embed", embedded.message)

    refreshed = refresh_book(ctx.runner, ctx.library, bid)
    new_hash = fingerprint(snapshot(refreshed)) if refreshed is not None else fingerprint(snap)

    done = current.succeeded(ItemStatus.DONE, new_hash, "fetched+applied+embedded")
    ctx.persist(bid, done)
    logger.info("[done] updated + embedded", extra={"event": "pipeline.item.done"})
    return ItemResult(bid, ItemOutcome.DONE, "fetch+apply+embed", done.message or "", done.status)


__all__ = ["PipelineContext", "process_book", "skip_reason"]
