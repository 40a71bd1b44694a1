"""Addressing a Calibre library through calibredb."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..logging_manager import truncate
from ..runner import CommandResult

MESSAGE_STDERR_LIMIT = 500


class CalibreError(RuntimeError):
    """Raised when calibredb cannot serve a query the run depends on."""


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of a single calibredb or fetch-ebook-metadata step."""

    ok: bool
    message: str


@dataclass(frozen=True)
class CalibreLibrary:
    """A local library directory or a Content Server URL plus its credentials."""

    spec: str
    username: Optional[str] = None
    password: Optional[str] = None
    executable: str = "calibredb"

    @property
    def is_remote(self) -> bool:
        return self.spec.startswith(("http://", "https://"))

    def command(self, *args: str) -> list[str]:
        """Build a calibredb command line targeting this library."""

        argv = [self.executable, "--with-library", self.spec]
        # Credentials only mean something to a Content Server.
        if self.is_remote and self.username:
            argv.extend(["--username", self.username])
            if self.password:
                argv.extend(["--password", self.password])
        argv.extend(args)
        return argv


def failure_message(label: str, result: CommandResult) -> str:
    """``"<label> failed rc=N stderr=..."`` with stderr cut to a readable length."""

    message = f"{label} failed rc={result.returncode}"
    stderr = truncate(result.stderr, MESSAGE_STDERR_LIMIT)
    if stderr:
        message += f" stderr={stderr}"
    return message


__all__ = ["CalibreError", "CalibreLibrary", "OperationResult", "failure_message"]
