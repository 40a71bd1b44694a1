"""Argument parsing helpers for the calibre-updatr CLI."""

from __future__ import annotations

import argparse
import sys
from typing import Optional, Sequence

from ..dups import OUTPUT_FORMATS

SUBCOMMANDS = ("update", "dups")


def _add_update_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument(
        "--config",
        default=None,
        help="Path to the TOML configuration file (defaults to ./config.toml if present).",
    )
    parser.add_argument("--library", help="Local Calibre library directory.")
    parser.add_argument(
        "--library-url",
        help='Calibre Content Server library URL, e.g. "http://localhost:8081/#en_nonfiction".',
    )
    parser.add_argument("--calibre-username", help="Content Server username.")
    parser.add_argument("--calibre-password", help="Content Server password.")
    parser.add_argument("--state", help="Path to the state file.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without touching the library or the state file.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging output.")
    return parser


def _add_dups_arguments(parser: argparse.ArgumentParser) -> argparse.ArgumentParser:
    parser.add_argument(
        "--library",
        required=True,
        help="Path to the Calibre library root (the folder holding author directories).",
    )
    parser.add_argument("--output", choices=OUTPUT_FORMATS, default="text", help="Output format.")
    parser.add_argument("--out", help="Write the report to this file instead of stdout.")
    parser.add_argument(
        "--ext",
        dest="extensions",
        action="append",
        help="Only consider this extension (repeatable), e.g. --ext epub --ext pdf.",
    )
    parser.add_argument(
        "--follow-symlinks", action="store_true", help="Follow symlinks while walking."
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=0,
        help="Number of hashing threads (0 picks a default from the CPU count).",
    )
    parser.add_argument(
        "--min-size", type=int, default=0, help="Skip files smaller than this many bytes."
    )
    parser.add_argument(
        "--include-sidecars",
        action="store_true",
        help="Also hash Calibre sidecar files (metadata.opf, cover.jpg, ...).",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging output.")
    return parser


def build_update_parser() -> argparse.ArgumentParser:
    """Parser for invocations without a sub-command, which run an update."""

    parser = argparse.ArgumentParser(
        prog="calibre-updatr",
        description="Fetch, apply and embed metadata for English books in a Calibre library.",
        allow_abbrev=False,
    )
    parser.set_defaults(command="update")
    return _add_update_arguments(parser)


def build_cli_parser() -> argparse.ArgumentParser:
    """Build the CLI parser with explicit sub-commands."""

    parser = argparse.ArgumentParser(
        prog="calibre-updatr",
        description="calibre-updatr command line interface",
        allow_abbrev=False,
    )
    subparsers = parser.add_subparsers(dest="command")

    update_parser = subparsers.add_parser(
        "update", help="Update metadata for candidate books", allow_abbrev=False
    )
    _add_update_arguments(update_parser)
    update_parser.set_defaults(command="update")

    dups_parser = subparsers.add_parser(
        "dups", help="Report byte-identical files in a library directory", allow_abbrev=False
    )
    _add_dups_arguments(dups_parser)
    dups_parser.set_defaults(command="dups")

    return parser


def parse_cli_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse ``argv``; without a sub-command the arguments are read as ``update``."""

    args = list(sys.argv[1:] if argv is None else argv)
    if args and (args[0] in SUBCOMMANDS or args[0] in ("-h", "--help")):
        return build_cli_parser().parse_args(args)
    return build_update_parser().parse_args(args)


__all__ = ["build_cli_parser", "build_update_parser", "parse_cli_args"]
