"""Progress events exchanged between providers, the orchestrator and observers."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Literal, assert_never

from testgen_agent.orchestrator.sanitization import sanitize_agent_log_message

LogLevel = Literal["info", "warn", "error"]


class TestGenPhase(str, Enum):
    """Pipeline phases reported through `PhaseEvent`."""

    __test__ = False

    PREPARING = "preparing"
    PERSPECTIVES = "perspectives"
    GENERATING = "generating"
    RUNNING_TESTS = "running-tests"
    DONE = "done"


PHASE_LABELS: dict[TestGenPhase, str] = {
    TestGenPhase.PREPARING: "Preparing",
    TestGenPhase.PERSPECTIVES: "Generating test perspectives",
    TestGenPhase.GENERATING: "Generating test code",
    TestGenPhase.RUNNING_TESTS: "Running tests",
    TestGenPhase.DONE: "Done",
}


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""

    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class StartedEvent:
    task_id: str
    label: str
    detail: str | None = None
    timestamp_ms: int = 0


@dataclass(slots=True, frozen=True)
class LogEvent:
    task_id: str
    level: LogLevel
    message: str
    timestamp_ms: int = 0


@dataclass(slots=True, frozen=True)
class FileWriteEvent:
    task_id: str
    path: str
    lines_created: int | None = None
    bytes_written: int | None = None
    timestamp_ms: int = 0


@dataclass(slots=True, frozen=True)
class PhaseEvent:
    task_id: str
    phase: TestGenPhase
    phase_label: str
    timestamp_ms: int = 0


@dataclass(slots=True, frozen=True)
class CompletedEvent:
    task_id: str
    exit_code: int | None
    timestamp_ms: int = 0


TestGenEvent = StartedEvent | LogEvent | FileWriteEvent | PhaseEvent | CompletedEvent
EventObserver = Callable[[TestGenEvent], None]


def log_event(task_id: str, level: LogLevel, message: str) -> LogEvent:
    return LogEvent(task_id=task_id, level=level, message=message, timestamp_ms=now_ms())


def phase_event(task_id: str, phase: TestGenPhase, phase_label: str | None = None) -> PhaseEvent:
    return PhaseEvent(
        task_id=task_id,
        phase=phase,
        phase_label=phase_label or PHASE_LABELS[phase],
        timestamp_ms=now_ms(),
    )


def started_event(task_id: str, label: str, detail: str | None = None) -> StartedEvent:
    return StartedEvent(task_id=task_id, label=label, detail=detail, timestamp_ms=now_ms())


def completed_event(task_id: str, exit_code: int | None) -> CompletedEvent:
    return CompletedEvent(task_id=task_id, exit_code=exit_code, timestamp_ms=now_ms())


def format_event_lines(event: TestGenEvent) -> list[str]:
    """Render one event as report log lines; empty for log events with no content."""

    stamp = datetime.fromtimestamp(event.timestamp_ms / 1000, tz=UTC).isoformat()
    prefix = f"[{stamp}] [{event.task_id}]"
    match event:
        case StartedEvent(label=label, detail=detail):
            suffix = f" ({detail})" if detail else ""
            return [f"{prefix} START {label}{suffix}"]
        case LogEvent(level=level, message=message):
            sanitized = sanitize_agent_log_message(message)
            if not sanitized:
                return []
            first, *rest = sanitized.split("\n")
            lines = [f"{prefix} {level.upper()} {first}".rstrip()]
            lines.extend(f"  {line}".rstrip() for line in rest)
            return lines
        case FileWriteEvent(path=path, lines_created=lines_created, bytes_written=bytes_written):
            line = f"{prefix} WRITE {path}"
            if lines_created is not None:
                line += f" lines={lines_created}"
            if bytes_written is not None:
                line += f" bytes={bytes_written}"
            return [line]
        case PhaseEvent(phase=phase, phase_label=phase_label):
            return [f"{prefix} PHASE {phase.value}: {phase_label}"]
        case CompletedEvent(exit_code=exit_code):
            return [f"{prefix} DONE exit={_format_nullable(exit_code)}"]
        case _:
            assert_never(event)


def _format_nullable(value: object) -> str:
    return "null" if value is None else str(value)
