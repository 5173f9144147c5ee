from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path

import allure
import pytest

from testgen_agent.config import AgentSettings, ArtifactSettings, Settings
from testgen_agent.orchestrator.artifacts import PERSPECTIVE_TABLE_HEADER
from testgen_agent.orchestrator.backend.base import AgentRunRequest
from testgen_agent.orchestrator.events import (
    CompletedEvent,
    LogEvent,
    PhaseEvent,
    StartedEvent,
    TestGenEvent,
    TestGenPhase,
)
from testgen_agent.orchestrator.models import ExecutionRunner, TestExecutionResult
from testgen_agent.orchestrator.prompts import (
    EXECUTION_JSON_BEGIN,
    EXECUTION_JSON_END,
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
    PERSPECTIVE_MARKDOWN_BEGIN,
    PERSPECTIVE_MARKDOWN_END,
)
from testgen_agent.orchestrator.registry import TaskRegistry
from testgen_agent.orchestrator.run_environment import TEST_RESULT_ENV_VAR
from testgen_agent.orchestrator.session import (
    SKIP_REASON_NO_COMMAND,
    GenerationRequest,
    TestGenerationSession,
)

from conftest import ScriptedReply

pytestmark = [
    allure.epic("Pipeline Orchestration"),
    allure.feature("Test Generation Session"),
]

TIMESTAMP = "20260102_030405"
REPORT = f"docs/test-execution-reports/test-execution_{TIMESTAMP}.md"
PERSPECTIVES = f"docs/test-perspectives/test-perspectives_{TIMESTAMP}.md"


class _RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))


class _LocalRunner:
    def __init__(self, stdout: str = "  Suite\n    ✔ local passes\n", exit_code: int | None = 0) -> None:
        self.calls: list[tuple[str, Path, Mapping[str, str] | None]] = []
        self.stdout = stdout
        self.exit_code = exit_code
        self.write_result_file: dict[str, object] | None = None

    def __call__(self, command: str, cwd: Path, env: Mapping[str, str] | None) -> TestExecutionResult:
        self.calls.append((command, cwd, env))
        if self.write_result_file is not None and env is not None:
            Path(env[TEST_RESULT_ENV_VAR]).write_text(json.dumps(self.write_result_file), "utf-8")
        return TestExecutionResult(
            command=command,
            cwd=str(cwd),
            exit_code=self.exit_code,
            signal=None,
            duration_ms=30,
            stdout=self.stdout,
            stderr="",
        )


def _settings(**artifact_overrides) -> Settings:
    artifacts = ArtifactSettings(test_command="npm test")
    for name, value in artifact_overrides.items():
        setattr(artifacts, name, value)
    return Settings(agent=AgentSettings(agent_command="agent"), artifacts=artifacts)


def _perspective_reply() -> ScriptedReply:
    payload = json.dumps({"version": 1, "cases": [{"caseId": "TC-N-01", "notes": "seeded"}]})
    return ScriptedReply(messages=[f"{PERSPECTIVE_JSON_BEGIN}\n{payload}\n{PERSPECTIVE_JSON_END}"])


def _execution_reply(**overrides) -> ScriptedReply:
    payload = {
        "version": 1,
        "exitCode": 0,
        "signal": None,
        "durationMs": 900,
        "stdout": "  Suite\n    ✔ agent passes\n",
        "stderr": "",
    }
    payload.update(overrides)
    return ScriptedReply(messages=[f"{EXECUTION_JSON_BEGIN}\n{json.dumps(payload)}\n{EXECUTION_JSON_END}"])


class _Harness:
    def __init__(self, tmp_path: Path, provider, settings: Settings) -> None:
        self.workspace = tmp_path
        self.provider = provider
        self.registry = TaskRegistry()
        self.notifier = _RecordingNotifier()
        self.local_runner = _LocalRunner()
        self.events: list[TestGenEvent] = []
        self.session = TestGenerationSession(
            provider=provider,
            registry=self.registry,
            settings=settings,
            notifier=self.notifier,
            observer=self.events.append,
            local_runner=self.local_runner,
            clock=lambda: datetime(2026, 1, 2, 3, 4, 5),
        )

    def run(self, prompt: str = "BASE PROMPT"):
        return self.session.run(
            GenerationRequest(
                task_id="gen-1",
                workspace_root=self.workspace,
                label="unit tests",
                prompt=prompt,
                target_paths=["src/a.ts"],
            ),
        )

    def phases(self) -> list[TestGenPhase]:
        return [
            event.phase
            for event in self.events
            if isinstance(event, PhaseEvent) and event.task_id == "gen-1"
        ]

    def logs(self, task_id: str | None = None) -> list[LogEvent]:
        return [
            event
            for event in self.events
            if isinstance(event, LogEvent) and (task_id is None or event.task_id == task_id)
        ]

    def report_text(self) -> str:
        return (self.workspace / REPORT).read_text("utf-8")


def test_full_pipeline_with_agent_runner(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(_perspective_reply(), ScriptedReply(exit_code=0), _execution_reply())
    harness = _Harness(tmp_path, provider, _settings())

    outcome = harness.run()

    perspective_request, generation_request, test_request = provider.requests
    assert perspective_request.task_id == "gen-1-perspectives"
    assert perspective_request.allow_write is False
    assert generation_request.task_id == "gen-1"
    assert generation_request.allow_write is True
    assert generation_request.prompt.startswith("BASE PROMPT\n")
    assert PERSPECTIVE_TABLE_HEADER in generation_request.prompt
    assert "| TC-N-01 |" in generation_request.prompt
    assert test_request.task_id == "gen-1-test-agent"
    assert test_request.allow_write is False
    assert "npm test" in test_request.prompt

    assert harness.phases() == [
        TestGenPhase.PREPARING,
        TestGenPhase.PERSPECTIVES,
        TestGenPhase.GENERATING,
        TestGenPhase.RUNNING_TESTS,
        TestGenPhase.DONE,
    ]
    assert outcome.cancelled is False
    assert outcome.generation_exit_code == 0
    assert outcome.perspective is not None
    assert outcome.perspective.relative_path == PERSPECTIVES
    assert outcome.report is not None
    assert outcome.report.relative_path == REPORT
    assert outcome.rejection is not None
    assert outcome.rejection.rejected is False
    assert harness.local_runner.calls == []

    report = harness.report_text()
    assert "- runner: agent" in report
    assert "- verdict: passed" in report
    assert "| Suite | agent passes | ✅ |" in report
    assert "START test-command (runner=agent cmd=npm test)" in report

    assert harness.notifier.messages == [
        ("info", "Test generation finished: unit tests"),
        ("info", f"Tests passed: {REPORT}"),
    ]
    assert harness.registry.running_count() == 0

    first, last = harness.events[0], harness.events[-1]
    assert isinstance(first, StartedEvent)
    assert first.detail == "src/a.ts"
    assert isinstance(last, CompletedEvent)
    assert (last.task_id, last.exit_code) == ("gen-1", 0)


def test_failed_perspective_extraction_keeps_base_prompt(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(
        ScriptedReply(messages=["no table today"]),
        ScriptedReply(exit_code=0),
        _execution_reply(),
    )
    harness = _Harness(tmp_path, provider, _settings())

    outcome = harness.run()

    assert provider.requests[1].prompt == "BASE PROMPT"
    assert outcome.perspective_extracted is False
    assert outcome.perspective is not None
    assert "TC-E-EXTRACT-01" in outcome.perspective.absolute_path.read_text("utf-8")
    assert outcome.report is not None


def test_disabled_perspectives_go_straight_to_generation(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(ScriptedReply(exit_code=0), _execution_reply())
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False))

    outcome = harness.run()

    assert [request.task_id for request in provider.requests] == ["gen-1", "gen-1-test-agent"]
    assert TestGenPhase.PERSPECTIVES not in harness.phases()
    assert outcome.perspective is None
    assert not (tmp_path / "docs" / "test-perspectives").exists()


def test_cancel_during_perspectives_stops_before_generation(tmp_path: Path, scripted_provider) -> None:
    registry_holder: list[TaskRegistry] = []

    def cancel(request: AgentRunRequest) -> None:
        registry_holder[0].cancel("gen-1")

    provider = scripted_provider(ScriptedReply(messages=["..."], on_run=cancel))
    harness = _Harness(tmp_path, provider, _settings())
    registry_holder.append(harness.registry)

    outcome = harness.run()

    assert outcome.cancelled is True
    assert [request.task_id for request in provider.requests] == ["gen-1-perspectives"]
    assert TestGenPhase.GENERATING not in harness.phases()
    assert isinstance(harness.events[-1], CompletedEvent)
    assert harness.events[-1].exit_code is None
    assert harness.logs("gen-1")[-1].level == "warn"
    assert not (tmp_path / REPORT).exists()
    assert harness.registry.running_count() == 0


def test_cancel_during_generation_skips_tests(tmp_path: Path, scripted_provider) -> None:
    registry_holder: list[TaskRegistry] = []

    def cancel(request: AgentRunRequest) -> None:
        registry_holder[0].cancel(request.task_id)

    provider = scripted_provider(ScriptedReply(exit_code=0, on_run=cancel))
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False))
    registry_holder.append(harness.registry)

    outcome = harness.run()

    assert outcome.cancelled is True
    assert outcome.generation_exit_code == 0
    assert len(provider.requests) == 1
    assert TestGenPhase.RUNNING_TESTS not in harness.phases()
    assert harness.local_runner.calls == []
    assert outcome.report is None


def test_rejected_agent_run_falls_back_to_local_runner(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(
        ScriptedReply(exit_code=0),
        _execution_reply(exitCode=None, stdout="", stderr="Tool execution rejected by the user"),
    )
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False))

    outcome = harness.run()

    assert outcome.rejection is not None
    assert outcome.rejection.rejected is True
    assert outcome.rejection.matched_rule == "rejection_vocabulary"
    [(command, cwd, env)] = harness.local_runner.calls
    assert (command, cwd) == ("npm test", tmp_path)
    assert env == {TEST_RESULT_ENV_VAR: str(tmp_path / "test-result.json")}
    assert outcome.result is not None
    assert outcome.result.runner is ExecutionRunner.LOCAL

    warnings = [event for event in harness.logs("gen-1-test") if event.level == "warn"]
    assert any("re-running locally" in event.message for event in warnings)
    report = harness.report_text()
    assert "- runner: local" in report
    assert "local passes" in report


def test_local_runner_attaches_fresh_result_file(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(ScriptedReply(exit_code=0))
    harness = _Harness(
        tmp_path,
        provider,
        _settings(include_perspective_table=False, test_execution_runner=ExecutionRunner.LOCAL),
    )
    harness.local_runner.exit_code = 1
    harness.local_runner.write_result_file = {
        "tests": [
            {"suite": "S", "title": "one", "fullTitle": "S one", "state": "passed"},
            {"suite": "S", "title": "two", "fullTitle": "S two", "state": "failed"},
        ],
    }

    outcome = harness.run()

    assert [request.task_id for request in provider.requests] == ["gen-1"]
    assert outcome.result is not None
    assert outcome.result.test_result is not None
    report = harness.report_text()
    assert "- source: structured-tests" in report
    assert "| S | two | ❌ |" in report
    assert "START test-command (cmd=npm test)" in report
    assert harness.notifier.messages[-1] == ("error", f"Tests failed: {REPORT}")
    assert harness.logs("gen-1-test")[-1].level == "error"


def test_blank_test_command_persists_a_skipped_report(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(ScriptedReply(exit_code=0))
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False, test_command="  "))

    outcome = harness.run()

    assert len(provider.requests) == 1
    assert harness.local_runner.calls == []
    assert outcome.result is not None
    assert outcome.result.skipped is True
    assert outcome.result.skip_reason == SKIP_REASON_NO_COMMAND
    assert outcome.result.exit_code is None
    assert outcome.result.duration_ms == 0
    report = harness.report_text()
    assert "- status: skipped" in report
    assert harness.notifier.messages[-1] == ("info", f"Test execution skipped: {REPORT}")
    last = harness.events[-1]
    assert isinstance(last, CompletedEvent)
    assert last.exit_code is None


def test_nested_host_command_only_warns(tmp_path: Path, scripted_provider) -> None:
    (tmp_path / "package.json").write_text(json.dumps({"scripts": {"test": "vscode-test"}}), "utf-8")
    provider = scripted_provider(ScriptedReply(exit_code=0))
    harness = _Harness(
        tmp_path,
        provider,
        _settings(include_perspective_table=False, test_execution_runner=ExecutionRunner.LOCAL),
    )

    outcome = harness.run()

    assert any("nested editor host" in event.message for event in harness.logs("gen-1-test"))
    assert len(harness.local_runner.calls) == 1
    assert outcome.report is not None


def test_generation_failure_is_notified_and_pipeline_continues(tmp_path: Path, scripted_provider) -> None:
    provider = scripted_provider(ScriptedReply(exit_code=1), _execution_reply())
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False))

    outcome = harness.run()

    assert outcome.generation_exit_code == 1
    assert harness.notifier.messages[0] == ("error", "Test generation failed (exit=1): unit tests")
    assert outcome.report is not None


def test_stray_perspective_files_are_removed_after_generation(
    tmp_path: Path,
    scripted_provider,
) -> None:
    def write_duplicate(request: AgentRunRequest) -> None:
        (request.workspace_root / "test_perspectives.md").write_text(
            f"{PERSPECTIVE_MARKDOWN_BEGIN}\n| x |\n{PERSPECTIVE_MARKDOWN_END}",
            "utf-8",
        )

    provider = scripted_provider(ScriptedReply(exit_code=0, on_run=write_duplicate), _execution_reply())
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False))

    harness.run()

    assert not (tmp_path / "test_perspectives.md").exists()
    [guard] = harness.logs("gen-1-guard")
    assert guard.level == "warn"
    assert "test_perspectives.md" in guard.message


def test_collaborator_errors_still_unregister(tmp_path: Path, scripted_provider) -> None:
    def explode(request: AgentRunRequest) -> None:
        raise RuntimeError("provider crashed")

    provider = scripted_provider(ScriptedReply(on_run=explode))
    harness = _Harness(tmp_path, provider, _settings(include_perspective_table=False))

    with pytest.raises(RuntimeError, match="provider crashed"):
        harness.run()

    assert harness.registry.running_count() == 0
