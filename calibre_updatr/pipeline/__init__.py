"""Per-book update pipeline and the run loop driving it."""

from .processor import PipelineContext, process_book, skip_reason
from .run import SetupError, build_runner, resolve_state_path, run_update, validate_setup
from .summary import ItemOutcome, ItemResult, RunSummary

__all__ = [
    "ItemOutcome",
    "ItemResult",
    "PipelineContext",
    "RunSummary",
    "SetupError",
    "build_runner",
    "process_book",
    "resolve_state_path",
    "run_update",
    "skip_reason",
    "validate_setup",
]
