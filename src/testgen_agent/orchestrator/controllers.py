"""Controllers for test-generation CLI commands."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path

from testgen_agent.config import Settings, parse_runner
from testgen_agent.orchestrator.aggregator import summarize_test_run
from testgen_agent.orchestrator.artifacts import (
    EXECUTION_PREFIX,
    PERSPECTIVE_PREFIX,
    find_latest_artifact,
)
from testgen_agent.orchestrator.backend import AgentProvider, CliAgentProvider
from testgen_agent.orchestrator.events import TestGenEvent, format_event_lines
from testgen_agent.orchestrator.output_parser import parse_mocha_output
from testgen_agent.orchestrator.registry import TaskRegistry
from testgen_agent.orchestrator.session import GenerationRequest, TestGenerationSession

logger = logging.getLogger(__name__)

REPORT_KINDS = ("perspectives", "execution")


@dataclass(slots=True)
class RunCommand:
    """CLI input for one pipeline run."""

    workspace: Path
    prompt_file: Path
    label: str
    targets: tuple[str, ...]
    runner: str | None = None
    test_command: str | None = None
    include_perspectives: bool = True
    model: str | None = None


@dataclass(slots=True)
class RunCommandResult:
    lines: list[str]
    success: bool


@dataclass(slots=True)
class LatestReportCommand:
    workspace: Path
    kind: str = "execution"


@dataclass(slots=True)
class ParseOutputCommand:
    output_file: Path


class TestGenCliController:
    """Wires settings, provider and session together for the CLI."""

    __test__ = False

    def __init__(self, provider: AgentProvider | None = None) -> None:
        self.provider = provider

    def run(self, command: RunCommand) -> RunCommandResult:
        settings = Settings.from_env()
        if command.runner is not None:
            settings.artifacts.test_execution_runner = parse_runner(command.runner)
        if command.test_command is not None:
            settings.artifacts.test_command = command.test_command
        if not command.include_perspectives:
            settings.artifacts.include_perspective_table = False
        if command.model:
            settings.agent.model = command.model
        settings.validate()

        workspace = command.workspace.resolve()
        session = TestGenerationSession(
            provider=self.provider or CliAgentProvider(),
            registry=TaskRegistry(),
            settings=settings,
            observer=_log_event,
        )
        outcome = session.run(
            GenerationRequest(
                task_id=f"testgen-{uuid.uuid4().hex[:8]}",
                workspace_root=workspace,
                label=command.label,
                prompt=command.prompt_file.read_text("utf-8"),
                target_paths=list(command.targets),
            ),
        )

        lines = [f"Task: {outcome.task_id}"]
        if outcome.perspective is not None:
            state = "extracted" if outcome.perspective_extracted else "extraction failed"
            lines.append(f"Perspective table ({state}): {outcome.perspective.display_path}")
        if outcome.cancelled:
            lines.append("Cancelled.")
            return RunCommandResult(lines=lines, success=False)

        exit_text = "null" if outcome.generation_exit_code is None else str(outcome.generation_exit_code)
        lines.append(f"Generation exit: {exit_text}")
        if outcome.rejection is not None and outcome.rejection.rejected:
            lines.append(f"Agent test run rejected ({outcome.rejection.describe()}), re-ran locally.")
        if outcome.report is not None:
            lines.append(f"Test execution report: {outcome.report.display_path}")

        success = outcome.generation_exit_code == 0
        if outcome.result is not None:
            summary = summarize_test_run(outcome.result)
            if outcome.result.skipped:
                lines.append("Tests: skipped")
            else:
                lines.append(
                    "Tests: "
                    f"passed={_count(summary.passed)} failed={_count(summary.failed)} "
                    f"pending={_count(summary.pending)} total={_count(summary.total)} "
                    f"verdict={'success' if summary.success else 'failure'}",
                )
                success = success and bool(summary.success)
        return RunCommandResult(lines=lines, success=success)

    def latest_report(self, command: LatestReportCommand) -> list[str]:
        settings = Settings.from_env()
        if command.kind == "perspectives":
            report_dir, prefix = settings.artifacts.perspective_report_dir, PERSPECTIVE_PREFIX
        else:
            report_dir, prefix = settings.artifacts.test_execution_report_dir, EXECUTION_PREFIX
        latest = find_latest_artifact(command.workspace.resolve(), report_dir, prefix)
        if latest is None:
            return [f"No {command.kind} report found under {report_dir}."]
        return [str(latest)]

    def parse_output(self, command: ParseOutputCommand) -> list[str]:
        parsed = parse_mocha_output(command.output_file.read_text("utf-8", errors="replace"))
        lines = [
            f"parsed={str(parsed.parsed).lower()} passed={parsed.passed} failed={parsed.failed}",
        ]
        for case in parsed.cases:
            mark = "PASS" if case.passed else "FAIL"
            name = f"{case.suite} > {case.name}" if case.suite else case.name
            lines.append(f"[{mark}] {name}")
        return lines


def _log_event(event: TestGenEvent) -> None:
    for line in format_event_lines(event):
        logger.info("%s", line)


def _count(value: int | None) -> str:
    return "unknown" if value is None else str(value)
