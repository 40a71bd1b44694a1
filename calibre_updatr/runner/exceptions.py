"""Exception hierarchy for external command execution."""

from __future__ import annotations

from typing import Iterable, Sequence


class RunnerError(RuntimeError):
    """Base exception raised by the process runner."""


class CommandExecutionError(RunnerError):
    """Raised when an external command cannot be started at all."""

    def __init__(
        self,
        command: Sequence[str] | str,
        *,
        cause: BaseException | None = None,
    ) -> None:
        if isinstance(command, (str, bytes)):
            coerced: Sequence[str] = (str(command),)
        elif isinstance(command, Iterable):
            coerced = tuple(str(part) for part in command)
        else:
            coerced = (str(command),)

        self.command = coerced
        self.cause = cause

        detail = f" ({cause.__class__.__name__}: {cause})" if cause else ""
        message = f"Failed to run command{detail}: {' '.join(coerced)}"
        super().__init__(message)


__all__ = ["RunnerError", "CommandExecutionError"]
