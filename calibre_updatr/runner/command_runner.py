"""Run calibredb and fetch-ebook-metadata with consistent environment handling."""

from __future__ import annotations

import os
import queue
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Mapping, Optional, Sequence

from .. import logging_manager as log_mgr
from .environment import (
    DEBUG_ENV_KEYS,
    DEFAULT_CLEAN_PREFIXES,
    DEFAULT_CLEAN_RETRY_SIGNATURES,
    DEFAULT_HEADLESS_ENV,
    LOCALE_VARIANTS,
    CalibredbEnvMode,
    EnvVariant,
    apply_defaults,
    build_environment,
    clean_environment,
    stderr_signature_check,
)
from .exceptions import CommandExecutionError

logger = log_mgr.get_logger().getChild("runner")

# Negative and outside the signal range, so it never matches a real status.
TIMEOUT_RETURNCODE = -124
POLL_INTERVAL = 0.05
READER_JOIN_TIMEOUT = 2.0
OUTPUT_LOG_LIMIT = 2000

_SECRET_FLAGS = frozenset({"--password"})


@dataclass(slots=True)
class CommandResult:
    """Container describing a completed (or killed) command execution."""

    command: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


RetryPredicate = Callable[[CommandResult], bool]


def redact_command(command: Sequence[str]) -> str:
    """Render ``command`` for logs with credential values masked."""

    parts: list[str] = []
    hide_next = False
    for part in command:
        parts.append("***" if hide_next else str(part))
        hide_next = str(part) in _SECRET_FLAGS
    return " ".join(parts)


def _kill_process_group(process: subprocess.Popen) -> None:
    """SIGKILL the session started for ``process``, including wrapped grandchildren."""

    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        # Group already gone.
        pass
    process.wait()


def _pump_lines(pipe: IO[str], stream: str, sink: "queue.Queue[tuple[str, str]]") -> None:
    try:
        for line in iter(pipe.readline, ""):
            sink.put((stream, line))
    finally:
        pipe.close()


class CommandRunner:
    """Execute external tools with environment strategies, timeouts and heartbeats.

    The calibredb environment strategy only applies to commands whose
    executable basename matches ``catalog_executable``; headless rendering
    variables and the optional ``xvfb-run`` wrapper only apply to
    ``fetch_executable``.
    """

    def __init__(
        self,
        *,
        env_mode: CalibredbEnvMode = CalibredbEnvMode.INHERIT,
        catalog_executable: str = "calibredb",
        fetch_executable: str = "fetch-ebook-metadata",
        headless_fetch: bool = True,
        headless_env: Optional[Mapping[str, str]] = None,
        fetch_use_xvfb: bool = False,
        debug_catalog_env: bool = False,
        clean_prefixes: Sequence[str] = DEFAULT_CLEAN_PREFIXES,
        clean_retry_check: Optional[RetryPredicate] = None,
        env_variants: Sequence[EnvVariant] = LOCALE_VARIANTS,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        self.env_mode = CalibredbEnvMode(env_mode)
        self.catalog_executable = catalog_executable
        self.fetch_executable = fetch_executable
        self.headless_fetch = headless_fetch
        self.headless_env = dict(DEFAULT_HEADLESS_ENV if headless_env is None else headless_env)
        self.fetch_use_xvfb = fetch_use_xvfb
        self.debug_catalog_env = debug_catalog_env
        self.clean_prefixes = tuple(clean_prefixes)
        self.clean_retry_check: RetryPredicate = clean_retry_check or stderr_signature_check(
            DEFAULT_CLEAN_RETRY_SIGNATURES
        )
        self.env_variants = tuple(env_variants)
        self.poll_interval = max(0.001, float(poll_interval))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def execute(
        self,
        command: Sequence[str],
        *,
        capture_output: bool = True,
        extra_env: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        heartbeat: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` to completion and return its :class:`CommandResult`.

        Non-zero exits and timeouts are reported through the result, never
        raised. Only an empty ``command`` (``ValueError``) or a process that
        cannot be spawned (:class:`CommandExecutionError`) raise.
        """

        argv = self._coerce(command)
        env = self._environment_for(argv, extra_env)
        argv = self._wrap_fetch(argv)

        def _run(run_env: Mapping[str, str]) -> CommandResult:
            return self._run_once(
                argv,
                run_env,
                capture_output=capture_output,
                timeout=timeout,
                heartbeat=heartbeat,
                stream=False,
            )

        if self._is_catalog(argv):
            return self._execute_catalog(env, _run)
        return _run(env)

    def execute_streaming(
        self,
        command: Sequence[str],
        *,
        timeout: Optional[float] = None,
        heartbeat: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` logging each output line as soon as it arrives."""

        argv = self._coerce(command)
        env = self._environment_for(argv, None)
        argv = self._wrap_fetch(argv)
        return self._run_once(
            argv,
            env,
            capture_output=True,
            timeout=timeout,
            heartbeat=heartbeat,
            stream=True,
        )

    # ------------------------------------------------------------------
    # Command classification and environment
    # ------------------------------------------------------------------
    @staticmethod
    def _coerce(command: Sequence[str]) -> tuple[str, ...]:
        if isinstance(command, (str, bytes)):
            command = [str(command)]
        argv = tuple(str(part) for part in command)
        if not argv:
            raise ValueError("empty command")
        logger.debug(
            "Executing command",
            extra={"event": "runner.command.execute", "command": redact_command(argv)},
        )
        return argv

    @staticmethod
    def _matches(argv: Sequence[str], executable: str) -> bool:
        return Path(argv[0]).name == Path(executable).name

    def _is_catalog(self, argv: Sequence[str]) -> bool:
        return self._matches(argv, self.catalog_executable)

    def _is_fetch(self, argv: Sequence[str]) -> bool:
        return self._matches(argv, self.fetch_executable)

    def _environment_for(
        self, argv: Sequence[str], extra_env: Optional[Mapping[str, str]]
    ) -> dict[str, str]:
        env = build_environment(extra_env)
        if self.headless_fetch and self._is_fetch(argv):
            env = apply_defaults(env, self.headless_env)
            logger.debug(
                "Using headless Qt/WebEngine environment",
                extra={"event": "runner.fetch.headless"},
            )
        return env

    def _wrap_fetch(self, argv: tuple[str, ...]) -> tuple[str, ...]:
        if self.fetch_use_xvfb and self._is_fetch(argv):
            logger.info("Running fetch under xvfb-run", extra={"event": "runner.fetch.xvfb"})
            return ("xvfb-run", "-a", *argv)
        return argv

    # ------------------------------------------------------------------
    # calibredb environment strategies
    # ------------------------------------------------------------------
    def _execute_catalog(
        self,
        env: Mapping[str, str],
        run: Callable[[Mapping[str, str]], CommandResult],
    ) -> CommandResult:
        if self.debug_catalog_env:
            self._log_catalog_env(env)

        if self.env_mode is CalibredbEnvMode.CLEAN:
            return run(clean_environment(env, self.clean_prefixes))

        first = run(env)
        if first.ok:
            return first

        if self.env_mode is CalibredbEnvMode.OVERRIDE:
            last = first
            for variant in self.env_variants:
                logger.info(
                    "Retrying calibredb with locale variant %s",
                    variant.name,
                    extra={"event": "runner.calibredb.env_variant", "variant": variant.name},
                )
                last = run(variant.apply(env))
                if last.ok:
                    return last
            self._log_failure_output(last, "calibredb")
            return last

        self._log_failure_output(first, "calibredb")
        if not self.clean_retry_check(first):
            return first
        retry = run(clean_environment(env, self.clean_prefixes))
        if retry.ok:
            logger.info(
                "calibredb succeeded after cleaning environment variables",
                extra={"event": "runner.calibredb.clean_retry"},
            )
            return retry
        self._log_failure_output(retry, "calibredb retry")
        return retry

    def _log_catalog_env(self, env: Mapping[str, str]) -> None:
        logger.debug(
            "calibredb environment debug",
            extra={"event": "runner.calibredb.debug_env", "current_exe": sys.executable},
        )
        for key in DEBUG_ENV_KEYS:
            if key in env:
                logger.debug(
                    "calibredb environment %s=%s",
                    key,
                    env[key],
                    extra={"event": "runner.calibredb.debug_env"},
                )

    @staticmethod
    def _log_failure_output(result: CommandResult, label: str) -> None:
        for stream in ("stderr", "stdout"):
            text = getattr(result, stream)
            if text and text.strip():
                logger.warning(
                    "[%s %s] %s",
                    label,
                    stream,
                    log_mgr.truncate(text, OUTPUT_LOG_LIMIT),
                    extra={"event": "runner.command.failed", "returncode": result.returncode},
                )

    # ------------------------------------------------------------------
    # Process execution
    # ------------------------------------------------------------------
    def _run_once(
        self,
        argv: tuple[str, ...],
        env: Mapping[str, str],
        *,
        capture_output: bool,
        timeout: Optional[float],
        heartbeat: Optional[float],
        stream: bool,
    ) -> CommandResult:
        timeout = timeout if timeout and timeout > 0 else None
        heartbeat = heartbeat if heartbeat and heartbeat > 0 else None
        if timeout is None and heartbeat is None and not stream:
            return self._run_blocking(argv, env, capture_output=capture_output)
        return self._run_polled(
            argv,
            env,
            capture_output=capture_output,
            timeout=timeout,
            heartbeat=heartbeat,
            stream=stream,
        )

    @staticmethod
    def _run_blocking(
        argv: tuple[str, ...], env: Mapping[str, str], *, capture_output: bool
    ) -> CommandResult:
        start = time.monotonic()
        pipe = subprocess.PIPE if capture_output else None
        try:
            completed = subprocess.run(
                list(argv),
                env=dict(env),
                stdout=pipe,
                stderr=pipe,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as exc:
            raise CommandExecutionError(argv, cause=exc) from exc
        return CommandResult(
            command=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
            duration=time.monotonic() - start,
        )

    def _run_polled(
        self,
        argv: tuple[str, ...],
        env: Mapping[str, str],
        *,
        capture_output: bool,
        timeout: Optional[float],
        heartbeat: Optional[float],
        stream: bool,
    ) -> CommandResult:
        start = time.monotonic()
        pipe = subprocess.PIPE if capture_output else None
        try:
            process = subprocess.Popen(
                list(argv),
                env=dict(env),
                stdout=pipe,
                stderr=pipe,
                text=True,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as exc:
            raise CommandExecutionError(argv, cause=exc) from exc

        lines: "queue.Queue[tuple[str, str]]" = queue.Queue()
        readers: list[threading.Thread] = []
        if capture_output:
            for name, handle in (("stdout", process.stdout), ("stderr", process.stderr)):
                reader = threading.Thread(
                    target=_pump_lines,
                    args=(handle, name, lines),
                    name=f"runner-{name}",
                    daemon=True,
                )
                reader.start()
                readers.append(reader)

        collected: dict[str, list[str]] = {"stdout": [], "stderr": []}

        def _consume(item: tuple[str, str]) -> None:
            name, line = item
            collected[name].append(line)
            if stream:
                text = line.rstrip("\r\n")
                if name == "stdout":
                    logger.info("[fetch stdout] %s", text, extra={"event": "runner.stream.stdout"})
                else:
                    logger.warning(
                        "[fetch stderr] %s", text, extra={"event": "runner.stream.stderr"}
                    )

        def _drain() -> bool:
            received = False
            while True:
                try:
                    item = lines.get_nowait()
                except queue.Empty:
                    return received
                _consume(item)
                received = True

        last_activity = start
        last_beat = start
        timed_out = False
        try:
            while True:
                try:
                    _consume(lines.get(timeout=self.poll_interval))
                    _drain()
                    last_activity = time.monotonic()
                except queue.Empty:
                    pass

                if process.poll() is not None:
                    break

                now = time.monotonic()
                if timeout is not None and now - start >= timeout:
                    timed_out = True
                    _kill_process_group(process)
                    logger.warning(
                        "Command timed out after %.1fs",
                        now - start,
                        extra={
                            "event": "runner.command.timeout",
                            "command": redact_command(argv),
                        },
                    )
                    break

                if heartbeat is not None and now - max(last_activity, last_beat) >= heartbeat:
                    logger.info(
                        "Still running (%ds elapsed)",
                        int(now - start),
                        extra={
                            "event": "runner.command.heartbeat",
                            "elapsed_seconds": int(now - start),
                        },
                    )
                    last_beat = now
        except BaseException:
            # Interrupted: do not leave the tool running in its own session.
            _kill_process_group(process)
            raise

        for reader in readers:
            reader.join(timeout=READER_JOIN_TIMEOUT)
        _drain()

        return CommandResult(
            command=argv,
            returncode=TIMEOUT_RETURNCODE if timed_out else int(process.returncode),
            stdout="".join(collected["stdout"]),
            stderr="".join(collected["stderr"]),
            timed_out=timed_out,
            duration=time.monotonic() - start,
        )


__all__ = [
    "CommandResult",
    "CommandRunner",
    "OUTPUT_LOG_LIMIT",
    "RetryPredicate",
    "TIMEOUT_RETURNCODE",
    "redact_command",
]
