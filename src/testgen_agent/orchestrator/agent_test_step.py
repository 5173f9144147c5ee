"""Agent-mediated test execution and parsing of its marker-delimited reply."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from pathlib import Path

from testgen_agent.orchestrator.backend.base import AgentProvider, AgentRunRequest
from testgen_agent.orchestrator.events import EventObserver, LogEvent, TestGenEvent
from testgen_agent.orchestrator.invocation import run_provider_to_completion
from testgen_agent.orchestrator.models import ExecutionRunner, TestExecutionResult
from testgen_agent.orchestrator.prompts import (
    EXECUTION_JSON_BEGIN,
    EXECUTION_JSON_END,
    EXECUTION_RESULT_BEGIN,
    EXECUTION_RESULT_END,
    STDERR_BEGIN,
    STDERR_END,
    STDOUT_BEGIN,
    STDOUT_END,
    build_agent_test_prompt,
)
from testgen_agent.orchestrator.structured import (
    ExtractionOk,
    extract_between_markers,
    parse_test_execution_json_v1,
)

_EXIT_CODE_LINE = re.compile(r"^\s*exitCode:\s*(.+?)\s*$", re.MULTILINE)
_SIGNAL_LINE = re.compile(r"^\s*signal:\s*(.+?)\s*$", re.MULTILINE)
_DURATION_LINE = re.compile(r"^\s*durationMs:\s*(\d+)\s*$", re.MULTILINE)
_INTEGER = re.compile(r"^[+-]?\d+$")

NO_MARKERS_MESSAGE = "Could not extract the test result from the agent output (markers not found)."
JSON_PARSE_PREFIX = "Failed to parse the test execution JSON. "


@dataclass(slots=True)
class AgentTestRunInput:
    task_id: str
    workspace_root: Path
    agent_command: str
    test_command: str
    model: str | None = None
    allow_write: bool = False


def run_test_command_via_agent(
    provider: AgentProvider,
    run: AgentTestRunInput,
    *,
    observer: EventObserver,
) -> TestExecutionResult:
    """Ask the agent to run the test command once and parse its reply."""

    started = time.monotonic()
    messages: list[str] = []

    def collect(event: TestGenEvent) -> None:
        observer(event)
        if isinstance(event, LogEvent):
            messages.append(event.message)

    exit_code = run_provider_to_completion(
        provider,
        AgentRunRequest(
            task_id=run.task_id,
            workspace_root=run.workspace_root,
            agent_command=run.agent_command,
            prompt=build_agent_test_prompt(run.test_command),
            model=run.model,
            allow_write=run.allow_write,
        ),
        observer=collect,
    )
    measured_ms = max(0.0, round((time.monotonic() - started) * 1000))
    return parse_agent_test_reply(
        "\n".join(messages),
        command=run.test_command,
        cwd=str(run.workspace_root),
        provider_exit_code=exit_code,
        measured_duration_ms=measured_ms,
    )


def parse_agent_test_reply(
    raw: str,
    *,
    command: str,
    cwd: str,
    provider_exit_code: int | None,
    measured_duration_ms: float,
) -> TestExecutionResult:
    """JSON marker block first, then the legacy text markers, then a failure result."""

    extracted_json = extract_between_markers(raw, EXECUTION_JSON_BEGIN, EXECUTION_JSON_END)
    if extracted_json:
        parsed = parse_test_execution_json_v1(extracted_json)
        if isinstance(parsed, ExtractionOk):
            payload = parsed.value
            duration = payload.duration_ms if payload.duration_ms > 0 else measured_duration_ms
            return TestExecutionResult(
                command=command,
                cwd=cwd,
                exit_code=payload.exit_code,
                signal=payload.signal,
                duration_ms=duration,
                stdout=payload.stdout,
                stderr=payload.stderr,
                runner=ExecutionRunner.AGENT,
            )

    extracted = extract_between_markers(raw, EXECUTION_RESULT_BEGIN, EXECUTION_RESULT_END)
    if not extracted:
        prefix = JSON_PARSE_PREFIX if extracted_json else ""
        return TestExecutionResult(
            command=command,
            cwd=cwd,
            exit_code=provider_exit_code,
            signal=None,
            duration_ms=measured_duration_ms,
            stdout="",
            stderr=raw,
            error_message=f"{prefix}{NO_MARKERS_MESSAGE}".strip(),
            runner=ExecutionRunner.AGENT,
        )

    return TestExecutionResult(
        command=command,
        cwd=cwd,
        exit_code=_legacy_exit_code(extracted, provider_exit_code),
        signal=_legacy_signal(extracted),
        duration_ms=_legacy_duration(extracted, measured_duration_ms),
        stdout=extract_between_markers(extracted, STDOUT_BEGIN, STDOUT_END) or "",
        stderr=extract_between_markers(extracted, STDERR_BEGIN, STDERR_END) or "",
        runner=ExecutionRunner.AGENT,
    )


def _legacy_exit_code(block: str, provider_exit_code: int | None) -> int | None:
    match = _EXIT_CODE_LINE.search(block)
    raw = match.group(1).strip() if match else ""
    if not raw or raw == "null":
        return None
    if _INTEGER.match(raw):
        return int(raw)
    return provider_exit_code


def _legacy_signal(block: str) -> str | None:
    match = _SIGNAL_LINE.search(block)
    raw = match.group(1).strip() if match else ""
    return None if not raw or raw == "null" else raw


def _legacy_duration(block: str, measured_duration_ms: float) -> float:
    match = _DURATION_LINE.search(block)
    return int(match.group(1)) if match else measured_duration_ms
