"""Run the configured test command as a direct child process."""

from __future__ import annotations

import logging
import os
import signal as signal_module
import subprocess
import threading
import time
from collections.abc import Mapping
from pathlib import Path
from typing import IO

from testgen_agent.orchestrator.models import ExecutionRunner, TestExecutionResult

logger = logging.getLogger(__name__)

MAX_CAPTURE_CHARS = 5 * 1024 * 1024
_READ_CHUNK = 64 * 1024


class _CappedBuffer:
    """Accumulates decoded output up to ``limit`` characters."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.truncated = False
        self._parts: list[str] = []
        self._size = 0

    def append(self, chunk: str) -> None:
        if self._size >= self.limit:
            self.truncated = True
            return
        room = self.limit - self._size
        if len(chunk) > room:
            chunk = chunk[:room]
            self.truncated = True
        self._parts.append(chunk)
        self._size += len(chunk)

    def render(self, stream_name: str) -> str:
        text = "".join(self._parts)
        if self.truncated:
            return f"{text}\n... ({stream_name} truncated)"
        return text


def run_test_command(
    command: str,
    cwd: Path | str,
    env: Mapping[str, str] | None = None,
    *,
    max_capture_chars: int = MAX_CAPTURE_CHARS,
) -> TestExecutionResult:
    """Execute ``command`` through the shell and capture its output.

    Spawn failures are reported through ``error_message`` with a null exit
    code instead of being raised.
    """

    started = time.monotonic()
    merged_env = {**os.environ, **env} if env else dict(os.environ)
    stdout_buffer = _CappedBuffer(max_capture_chars)
    stderr_buffer = _CappedBuffer(max_capture_chars)

    def _result(**overrides) -> TestExecutionResult:
        return TestExecutionResult(
            command=command,
            cwd=str(cwd),
            duration_ms=_elapsed_ms(started),
            stdout=stdout_buffer.render("stdout"),
            stderr=stderr_buffer.render("stderr"),
            stdout_truncated=stdout_buffer.truncated,
            stderr_truncated=stderr_buffer.truncated,
            runner=ExecutionRunner.LOCAL,
            **overrides,
        )

    logger.info("Running test command in %s: %s", cwd, command)
    try:
        process = subprocess.Popen(  # noqa: S602
            command,
            shell=True,
            cwd=str(cwd),
            env=merged_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as error:
        logger.warning("Test command failed to start: %s", error)
        return _result(exit_code=None, signal=None, error_message=str(error))

    readers = [
        threading.Thread(target=_pump, args=(process.stdout, stdout_buffer), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, stderr_buffer), daemon=True),
    ]
    for reader in readers:
        reader.start()
    returncode = process.wait()
    for reader in readers:
        reader.join()

    exit_code, signal_name = _split_returncode(returncode)
    logger.info(
        "Test command finished exit=%s signal=%s in %.0fms",
        exit_code,
        signal_name,
        _elapsed_ms(started),
    )
    return _result(exit_code=exit_code, signal=signal_name)


def _pump(stream: IO[str] | None, buffer: _CappedBuffer) -> None:
    if stream is None:
        return
    with stream:
        while chunk := stream.read(_READ_CHUNK):
            buffer.append(chunk)


def _split_returncode(returncode: int) -> tuple[int | None, str | None]:
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal_module.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


def _elapsed_ms(started: float) -> float:
    return max(0.0, round((time.monotonic() - started) * 1000))
