"""Command line interface for calibre-updatr."""

from .args import build_cli_parser, parse_cli_args
from .orchestrator import run_cli

__all__ = ["build_cli_parser", "parse_cli_args", "run_cli"]
