"""Phase pipeline for one test-generation request."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from testgen_agent.config import Settings
from testgen_agent.orchestrator.agent_test_step import AgentTestRunInput, run_test_command_via_agent
from testgen_agent.orchestrator.aggregator import summarize_test_run
from testgen_agent.orchestrator.artifacts import SavedArtifact, format_timestamp, save_execution_report
from testgen_agent.orchestrator.backend.base import AgentProvider, AgentRunRequest, RunningTask
from testgen_agent.orchestrator.cleanup import cleanup_unexpected_perspective_files
from testgen_agent.orchestrator.events import (
    PHASE_LABELS,
    EventObserver,
    TestGenEvent,
    TestGenPhase,
    completed_event,
    format_event_lines,
    log_event,
    now_ms,
    phase_event,
    started_event,
)
from testgen_agent.orchestrator.failure_classifier import (
    RejectionClassification,
    classify_agent_test_result,
)
from testgen_agent.orchestrator.invocation import run_provider_to_completion
from testgen_agent.orchestrator.local_runner import run_test_command
from testgen_agent.orchestrator.models import ExecutionRunner, TestExecutionResult
from testgen_agent.orchestrator.notifier import LoggingNotifier, Notifier
from testgen_agent.orchestrator.perspective_step import PerspectiveStepInput, run_perspective_step
from testgen_agent.orchestrator.prompts import append_perspective_to_prompt
from testgen_agent.orchestrator.registry import TaskRegistry
from testgen_agent.orchestrator.run_environment import (
    TEST_RESULT_ENV_VAR,
    looks_like_nested_host_command,
    read_fresh_test_result,
    result_file_path,
)

logger = logging.getLogger(__name__)

SKIP_REASON_NO_COMMAND = "Test command is empty; test execution was skipped."

LocalRunner = Callable[[str, Path, Mapping[str, str] | None], TestExecutionResult]


@dataclass(slots=True)
class GenerationRequest:
    """One user-triggered generation run."""

    task_id: str
    workspace_root: Path
    label: str
    prompt: str
    target_paths: Sequence[str] = field(default_factory=list)
    strategy_text: str = ""
    reference_text: str = ""


@dataclass(slots=True)
class SessionOutcome:
    """What one pipeline run produced, for CLI reporting."""

    task_id: str
    cancelled: bool = False
    generation_exit_code: int | None = None
    perspective: SavedArtifact | None = None
    perspective_extracted: bool = False
    report: SavedArtifact | None = None
    result: TestExecutionResult | None = None
    rejection: RejectionClassification | None = None


class _EventSink:
    """Forwards events to the observer and optionally captures them as log lines."""

    def __init__(self, observer: EventObserver | None) -> None:
        self._observer = observer
        self.captured: list[str] | None = None

    def __call__(self, event: TestGenEvent) -> None:
        if self.captured is not None:
            self.captured.extend(format_event_lines(event))
        if self._observer is not None:
            self._observer(event)

    def start_capture(self) -> None:
        self.captured = []

    def captured_text(self) -> str:
        return "\n".join(self.captured or [])


class TestGenerationSession:
    """Runs preparing -> perspectives -> generating -> running-tests -> done.

    Cancellation is polled after the perspective phase and after generation.
    The task is unregistered on every exit path.
    """

    __test__ = False

    def __init__(  # noqa: PLR0913
        self,
        *,
        provider: AgentProvider,
        registry: TaskRegistry,
        settings: Settings,
        notifier: Notifier | None = None,
        observer: EventObserver | None = None,
        local_runner: LocalRunner = run_test_command,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.provider = provider
        self.registry = registry
        self.settings = settings
        self.notifier = notifier or LoggingNotifier()
        self.observer = observer
        self.local_runner = local_runner
        self.clock = clock

    def run(self, request: GenerationRequest) -> SessionOutcome:
        task_id = request.task_id
        sink = _EventSink(self.observer)
        outcome = SessionOutcome(task_id=task_id)

        sink(started_event(task_id, request.label, ", ".join(request.target_paths) or None))
        self.registry.register(task_id, request.label)
        try:
            self._enter_phase(sink, task_id, TestGenPhase.PREPARING)
            timestamp = format_timestamp(self.clock())
            prompt = request.prompt

            if self.settings.artifacts.include_perspective_table:
                self._enter_phase(sink, task_id, TestGenPhase.PERSPECTIVES)
                step = run_perspective_step(
                    self.provider,
                    PerspectiveStepInput(
                        base_task_id=task_id,
                        workspace_root=request.workspace_root,
                        artifact_root=request.workspace_root,
                        agent_command=self.settings.agent.agent_command,
                        generation_label=request.label,
                        target_paths=request.target_paths,
                        report_dir=self.settings.artifacts.perspective_report_dir,
                        timestamp=timestamp,
                        model=self.settings.agent.model or None,
                        timeout_ms=self.settings.artifacts.perspective_timeout_ms,
                        strategy_text=request.strategy_text,
                        reference_text=request.reference_text,
                    ),
                    observer=sink,
                    on_running_task=self._handle_updater(task_id),
                )
                outcome.perspective = step.saved
                outcome.perspective_extracted = step.extracted
                if step.extracted:
                    prompt = append_perspective_to_prompt(prompt, step.markdown)

            if self._stop_if_cancelled(sink, task_id):
                outcome.cancelled = True
                return outcome

            outcome.generation_exit_code = self._generate(sink, request, prompt)

            if self._stop_if_cancelled(sink, task_id):
                outcome.cancelled = True
                return outcome

            self._run_tests(sink, request, timestamp, outcome)
            return outcome
        finally:
            self.registry.unregister(task_id)

    def _generate(self, sink: _EventSink, request: GenerationRequest, prompt: str) -> int | None:
        task_id = request.task_id
        self._enter_phase(sink, task_id, TestGenPhase.GENERATING)
        exit_code = run_provider_to_completion(
            self.provider,
            AgentRunRequest(
                task_id=task_id,
                workspace_root=request.workspace_root,
                agent_command=self.settings.agent.agent_command,
                prompt=prompt,
                model=self.settings.agent.model or None,
                allow_write=True,
            ),
            observer=sink,
            on_running_task=self._handle_updater(task_id),
        )

        guard_id = f"{task_id}-guard"
        for cleanup in cleanup_unexpected_perspective_files(request.workspace_root):
            if cleanup.deleted:
                message = f"Removed unexpected perspective file: {cleanup.relative_path}"
            else:
                message = f"Failed to remove {cleanup.relative_path}: {cleanup.error_message}"
            sink(log_event(guard_id, "warn", message))

        if exit_code == 0:
            self.notifier.info(f"Test generation finished: {request.label}")
        else:
            exit_text = "null" if exit_code is None else str(exit_code)
            self.notifier.error(f"Test generation failed (exit={exit_text}): {request.label}")
        return exit_code

    def _run_tests(
        self,
        sink: _EventSink,
        request: GenerationRequest,
        timestamp: str,
        outcome: SessionOutcome,
    ) -> None:
        task_id = request.task_id
        artifacts = self.settings.artifacts
        self._enter_phase(sink, task_id, TestGenPhase.RUNNING_TESTS)
        sink.start_capture()

        command = artifacts.test_command.strip()
        if not command:
            logger.info("No test command configured, skipping execution for %s", task_id)
            result = TestExecutionResult(
                command="",
                cwd=str(request.workspace_root),
                exit_code=None,
                signal=None,
                duration_ms=0,
                stdout="",
                stderr="",
                skipped=True,
                skip_reason=SKIP_REASON_NO_COMMAND,
            )
            self._finish(sink, request, timestamp, outcome, result, None)
            return

        test_task_id = f"{task_id}-test"
        if looks_like_nested_host_command(request.workspace_root, command):
            sink(
                log_event(
                    test_task_id,
                    "warn",
                    "The test command looks like it launches a nested editor host; "
                    "it may fail while another instance is running.",
                ),
            )

        started_at_ms = now_ms()
        if artifacts.test_execution_runner is ExecutionRunner.AGENT:
            sink(started_event(test_task_id, "test-command", f"runner=agent cmd={command}"))
            result = run_test_command_via_agent(
                self.provider,
                AgentTestRunInput(
                    task_id=f"{task_id}-test-agent",
                    workspace_root=request.workspace_root,
                    agent_command=self.settings.agent.agent_command,
                    test_command=command,
                    model=self.settings.agent.model or None,
                    allow_write=artifacts.agent_force_for_test_execution,
                ),
                observer=sink,
            )
            classification = classify_agent_test_result(result)
            outcome.rejection = classification
            if classification.rejected:
                logger.warning(
                    "Agent test run for %s looks rejected (%s), falling back to local runner",
                    task_id,
                    classification.describe(),
                )
                sink(
                    log_event(
                        test_task_id,
                        "warn",
                        "The agent appears to have refused to run the tests "
                        f"({classification.describe()}); re-running locally.",
                    ),
                )
                started_at_ms = now_ms()
                result = self._run_locally(sink, test_task_id, command, request.workspace_root)
            else:
                logger.info("Agent test run for %s accepted (%s)", task_id, classification.describe())
        else:
            sink(started_event(test_task_id, "test-command", f"cmd={command}"))
            result = self._run_locally(sink, test_task_id, command, request.workspace_root)

        test_result = read_fresh_test_result(result_file_path(request.workspace_root), started_at_ms)
        if test_result is not None:
            result = replace(result, test_result=test_result)
        sink(completed_event(test_task_id, result.exit_code))
        self._finish(sink, request, timestamp, outcome, result, result.exit_code)

    def _run_locally(
        self,
        sink: _EventSink,
        test_task_id: str,
        command: str,
        workspace_root: Path,
    ) -> TestExecutionResult:
        env = {TEST_RESULT_ENV_VAR: str(result_file_path(workspace_root))}
        result = self.local_runner(command, workspace_root, env)
        exit_text = "null" if result.exit_code is None else str(result.exit_code)
        if result.error_message:
            sink(log_event(test_task_id, "error", f"Test command failed to start: {result.error_message}"))
        elif result.exit_code == 0:
            sink(log_event(test_task_id, "info", f"Test command finished (exit={exit_text})"))
        else:
            sink(log_event(test_task_id, "error", f"Test command failed (exit={exit_text})"))
        return result

    def _finish(  # noqa: PLR0913
        self,
        sink: _EventSink,
        request: GenerationRequest,
        timestamp: str,
        outcome: SessionOutcome,
        result: TestExecutionResult,
        exit_code: int | None,
    ) -> None:
        task_id = request.task_id
        saved = save_execution_report(
            workspace_root=request.workspace_root,
            report_dir=self.settings.artifacts.test_execution_report_dir,
            timestamp=timestamp,
            generation_label=request.label,
            target_paths=request.target_paths,
            result=result,
            generated_at_ms=now_ms(),
            model=self.settings.agent.model or None,
            execution_log=sink.captured_text(),
        )
        outcome.report = saved
        outcome.result = result
        sink(log_event(task_id, "info", f"Saved test execution report: {saved.display_path}"))

        summary = summarize_test_run(result)
        if result.skipped:
            self.notifier.info(f"Test execution skipped: {saved.display_path}")
        elif summary.success:
            self.notifier.info(f"Tests passed: {saved.display_path}")
        else:
            self.notifier.error(f"Tests failed: {saved.display_path}")

        self._enter_phase(sink, task_id, TestGenPhase.DONE)
        sink(completed_event(task_id, exit_code))

    def _enter_phase(self, sink: _EventSink, task_id: str, phase: TestGenPhase) -> None:
        logger.info("Task %s entering phase %s", task_id, phase.value)
        self.registry.update_phase(task_id, phase, PHASE_LABELS[phase])
        sink(phase_event(task_id, phase))

    def _stop_if_cancelled(self, sink: _EventSink, task_id: str) -> bool:
        if not self.registry.is_cancelled(task_id):
            return False
        logger.warning("Task %s was cancelled", task_id)
        sink(log_event(task_id, "warn", "Cancelled."))
        sink(completed_event(task_id, None))
        return True

    def _handle_updater(self, task_id: str) -> Callable[[RunningTask], None]:
        def update(running: RunningTask) -> None:
            self.registry.update_running_task(task_id, running)

        return update
