"""Subprocess-based provider for stream-JSON CLI agents."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path
from typing import Any

from testgen_agent.orchestrator.backend.base import AgentRunRequest
from testgen_agent.orchestrator.events import (
    EventObserver,
    FileWriteEvent,
    LogEvent,
    LogLevel,
    TestGenEvent,
    completed_event,
    log_event,
    now_ms,
    started_event,
)

logger = logging.getLogger(__name__)

_IGNORED_RECORD_TYPES = frozenset({"thinking", "user"})


class ProviderRunError(RuntimeError):
    """Provider start-up error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliRunningTask:
    """Handle over one spawned agent process."""

    def __init__(self, task_id: str, process: subprocess.Popen[str]) -> None:
        self.task_id = task_id
        self._process = process
        self._finished = threading.Event()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the process exited and its output was drained."""

        return self._finished.wait(timeout)

    def dispose(self) -> None:
        if self._process.poll() is None:
            _terminate_process(self._process)

    def _mark_finished(self) -> None:
        self._finished.set()


class CliAgentProvider:
    """Run the agent CLI in print mode and translate its stream-JSON output into events."""

    def __init__(self, *, label: str = "cursor-agent") -> None:
        self.label = label
        self._active: CliRunningTask | None = None
        self._lock = threading.Lock()

    def run(self, request: AgentRunRequest, observer: EventObserver) -> CliRunningTask:
        run_args = build_run_args(request)
        self._stop_previous(request, observer)

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=str(request.workspace_root),
                env=os.environ.copy(),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise ProviderRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise ProviderRunError(
                f"Agent command failed to start: {error}",
                transient=True,
            ) from error

        handle = CliRunningTask(request.task_id, process)
        with self._lock:
            self._active = handle

        observer(
            started_event(
                request.task_id,
                self.label,
                detail=_describe_request(request),
            ),
        )
        logger.debug("Spawned agent pid=%s for %s", process.pid, request.task_id)

        reader = threading.Thread(
            target=self._pump,
            args=(process, handle, request, observer),
            name=f"agent-stdout-{request.task_id}",
            daemon=True,
        )
        reader.start()
        return handle

    def _stop_previous(self, request: AgentRunRequest, observer: EventObserver) -> None:
        with self._lock:
            previous = self._active
            self._active = None
        if previous is None or previous.finished:
            return
        previous.dispose()
        observer(
            log_event(
                request.task_id,
                "warn",
                f"Stopped previous agent task ({previous.task_id}) that had not finished.",
            ),
        )

    def _pump(
        self,
        process: subprocess.Popen[str],
        handle: CliRunningTask,
        request: AgentRunRequest,
        observer: EventObserver,
    ) -> None:
        stderr_chunks: list[str] = []
        stderr_reader = threading.Thread(
            target=_drain,
            args=(process.stderr, stderr_chunks),
            name=f"agent-stderr-{request.task_id}",
            daemon=True,
        )
        stderr_reader.start()

        exit_code: int | None = None
        try:
            translator = StreamJsonTranslator(request.task_id, request.workspace_root)
            assert process.stdout is not None
            for raw_line in process.stdout:
                for event in translator.translate_line(raw_line):
                    _safe_emit(observer, event)

            stderr_reader.join()
            stderr_text = "".join(stderr_chunks).strip()
            if stderr_text:
                _safe_emit(observer, log_event(request.task_id, "error", stderr_text))

            returncode = process.wait()
            # Killed by a signal: no exit code, like a signalled child in a shell.
            exit_code = returncode if returncode >= 0 else None
        except Exception as error:  # noqa: BLE001
            logger.warning("Agent output reader failed for %s: %s", request.task_id, error, exc_info=True)
            _safe_emit(
                observer,
                log_event(request.task_id, "error", f"Agent output could not be read, agent stopped: {error}"),
            )
            handle.dispose()
        finally:
            with self._lock:
                if self._active is handle:
                    self._active = None
            handle._mark_finished()
            _safe_emit(observer, completed_event(request.task_id, exit_code))


class StreamJsonTranslator:
    """Stateful mapping from stream-JSON lines to progress events."""

    def __init__(self, task_id: str, workspace_root: Path) -> None:
        self.task_id = task_id
        self.workspace_root = workspace_root
        self._last_write_path: str | None = None

    def translate_line(self, raw_line: str) -> list[TestGenEvent]:
        line = raw_line.strip()
        if not line:
            return []
        record = _parse_record(line)
        if record is None:
            return [self._log("warn", line)]
        return self.translate_record(record)

    def translate_record(self, record: dict[str, Any]) -> list[TestGenEvent]:
        record_type = _get_str(record, "type")
        if record_type in _IGNORED_RECORD_TYPES:
            return []

        if record_type == "assistant":
            text = _assistant_text(record.get("message"))
            return [self._log("info", text)] if text else []

        if record_type == "system":
            subtype = _get_str(record, "subtype")
            return [self._log("info", f"system:{subtype}")] if subtype else []

        if record_type == "result":
            duration = _get_number(record, "duration_ms")
            rendered = "unknown" if duration is None else _format_number(duration)
            return [self._log("info", f"result: duration_ms={rendered}")]

        if record_type == "tool_call":
            tool_call = record.get("tool_call")
            if not isinstance(tool_call, dict):
                return []
            name = _tool_call_name(tool_call)
            if name == "editToolCall":
                return self._edit_events(_get_str(record, "subtype"), tool_call.get(name))

        return [self._log("info", f"event:{record_type or 'unknown'}")]

    def _edit_events(self, subtype: str | None, body: object) -> list[TestGenEvent]:
        body = body if isinstance(body, dict) else {}
        args = body.get("args") if isinstance(body.get("args"), dict) else {}
        result = body.get("result") if isinstance(body.get("result"), dict) else {}
        success = result.get("success") if isinstance(result.get("success"), dict) else None

        path_from_args = _get_str(args, "path")
        if path_from_args:
            self._last_write_path = path_from_args

        if subtype == "started":
            final_path = path_from_args or self._last_write_path
            if not final_path:
                return []
            return [self._file_write(final_path)]

        if subtype == "completed":
            path_from_success = _get_str(success, "path") if success else None
            final_path = path_from_success or path_from_args or self._last_write_path
            if not final_path:
                return []
            self._last_write_path = final_path
            lines_added = _get_number(success, "linesAdded") if success else None
            return [
                self._file_write(
                    final_path,
                    lines_created=int(lines_added) if lines_added is not None else None,
                ),
            ]
        return []

    def _file_write(self, path: str, *, lines_created: int | None = None) -> FileWriteEvent:
        relative = to_workspace_relative(path, self.workspace_root)
        return FileWriteEvent(
            task_id=self.task_id,
            path=relative if relative is not None else path,
            lines_created=lines_created,
            timestamp_ms=now_ms(),
        )

    def _log(self, level: LogLevel, message: str) -> LogEvent:
        return log_event(self.task_id, level, message)


def build_run_args(request: AgentRunRequest) -> list[str]:
    """Render argv: ``<command> -p --output-format F [--model M] [--force] <prompt>``."""

    stripped = request.agent_command.strip()
    if not stripped:
        raise ProviderRunError("Agent command is empty.", transient=False)
    try:
        head = shlex.split(stripped)
    except ValueError as error:
        raise ProviderRunError(f"Agent command cannot be parsed: {error}", transient=False) from error

    args = [*head, "-p", "--output-format", request.output_format]
    if request.model:
        args.extend(["--model", request.model])
    if request.allow_write:
        args.append("--force")
    args.append(request.prompt)
    return args


def to_workspace_relative(file_path: str, workspace_root: Path) -> str | None:
    """Relative path inside the workspace; None when the path escapes it."""

    candidate = Path(file_path)
    if not candidate.is_absolute():
        return file_path
    try:
        return candidate.relative_to(workspace_root).as_posix()
    except ValueError:
        return None


def _describe_request(request: AgentRunRequest) -> str:
    detail = f"cmd={request.agent_command} format={request.output_format}"
    if request.model:
        detail += f" model={request.model}"
    return detail + (" write=on" if request.allow_write else " write=off")


def _drain(stream, sink: list[str]) -> None:
    if stream is None:
        return
    for chunk in stream:
        sink.append(chunk)


def _safe_emit(observer: EventObserver, event: TestGenEvent) -> None:
    try:
        observer(event)
    except Exception:  # noqa: BLE001
        logger.exception("Event observer failed for %s", event.task_id)


def _parse_record(line: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(line)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _tool_call_name(tool_call: dict[str, Any]) -> str | None:
    if not tool_call:
        return None
    for key in tool_call:
        if key.endswith("ToolCall"):
            return key
    return next(iter(tool_call))


def _assistant_text(message: object) -> str | None:
    if not isinstance(message, dict):
        return None
    content = message.get("content")
    if not isinstance(content, list) or not content:
        return None
    first = content[0]
    if not isinstance(first, dict):
        return None
    text = first.get("text")
    return text if isinstance(text, str) else None


def _get_str(record: dict[str, Any], key: str) -> str | None:
    value = record.get(key)
    return value if isinstance(value, str) else None


def _get_number(record: dict[str, Any], key: str) -> float | None:
    value = record.get(key)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    if value != value or value in (float("inf"), float("-inf")):
        return None
    return value


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
