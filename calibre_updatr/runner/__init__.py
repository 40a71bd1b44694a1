"""External process execution for calibredb and fetch-ebook-metadata."""

from .command_runner import (
    TIMEOUT_RETURNCODE,
    CommandResult,
    CommandRunner,
    RetryPredicate,
    redact_command,
)
from .environment import CalibredbEnvMode, EnvVariant, LOCALE_VARIANTS, stderr_signature_check
from .exceptions import CommandExecutionError, RunnerError

__all__ = [
    "CalibredbEnvMode",
    "CommandExecutionError",
    "CommandResult",
    "CommandRunner",
    "EnvVariant",
    "LOCALE_VARIANTS",
    "RetryPredicate",
    "RunnerError",
    "TIMEOUT_RETURNCODE",
    "redact_command",
    "stderr_signature_check",
]
