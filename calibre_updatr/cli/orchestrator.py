"""High-level orchestration for the calibre-updatr CLI."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .. import logging_manager as log_mgr
from ..calibre import CalibreError
from ..config_manager import ConfigError, UpdatrSettings, build_override_payload, load_settings
from ..dups import ScanOptions, render, scan_library
from ..pipeline import SetupError, run_update
from ..runner import CommandExecutionError
from ..state import StateFileError
from .args import parse_cli_args

logger = log_mgr.get_logger().getChild("cli")

EXIT_OK = 0
EXIT_FAILURE = 1

_FATAL_ERRORS = (ConfigError, SetupError, StateFileError, CalibreError, CommandExecutionError)


def _configure_logging(settings: UpdatrSettings, *, debug: bool) -> None:
    try:
        level = logging.DEBUG if debug else log_mgr.parse_log_level(settings.logging.level)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    log_mgr.setup_logging(
        level, log_format=settings.logging.format, log_file=settings.logging.file
    )


def load_update_settings(args: argparse.Namespace) -> UpdatrSettings:
    """Resolve settings for ``update``: defaults < config file < environment < flags."""

    overrides = build_override_payload(
        library=args.library,
        library_url=args.library_url,
        username=args.calibre_username,
        password=args.calibre_password,
        state_path=args.state,
        dry_run=args.dry_run or None,
    )
    return load_settings(args.config, overrides=overrides)


def run_update_command(args: argparse.Namespace) -> int:
    try:
        settings = load_update_settings(args)
        _configure_logging(settings, debug=args.debug)
        summary = run_update(settings)
    except _FATAL_ERRORS as exc:
        logger.error("%s", exc, extra={"event": "cli.update.failed"})
        return EXIT_FAILURE
    # Per-book failures are recorded in the state file and do not fail the run.
    logger.debug("Run finished", extra={"event": "cli.update.finished", **summary.as_dict()})
    return EXIT_OK


def run_dups_command(args: argparse.Namespace) -> int:
    options = ScanOptions(
        follow_symlinks=args.follow_symlinks,
        min_size=max(0, args.min_size),
        include_sidecars=args.include_sidecars,
        threads=max(0, args.threads),
    )
    if args.extensions:
        options.extensions = args.extensions
    try:
        groups = scan_library(args.library, options)
    except NotADirectoryError as exc:
        logger.error("%s", exc, extra={"event": "cli.dups.failed"})
        return EXIT_FAILURE

    report = render(groups, args.output)
    if args.out:
        out_path = Path(args.out).expanduser()
        try:
            out_path.write_text(report, encoding="utf-8")
        except OSError as exc:
            logger.error(
                "Failed to write %s: %s", out_path, exc, extra={"event": "cli.dups.failed"}
            )
            return EXIT_FAILURE
        logger.info("Wrote report to %s", out_path, extra={"event": "cli.dups.written"})
    else:
        sys.stdout.write(report)
        sys.stdout.flush()
    return EXIT_OK


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    """Primary console script entry point."""

    args = parse_cli_args(argv)
    command = getattr(args, "command", "update") or "update"

    # Text to stderr until the configuration says otherwise.
    log_mgr.setup_logging(
        logging.DEBUG if args.debug else log_mgr.DEFAULT_LOG_LEVEL, log_format="text"
    )

    if command == "dups":
        return run_dups_command(args)
    return run_update_command(args)


__all__ = ["EXIT_FAILURE", "EXIT_OK", "load_update_settings", "run_cli"]
