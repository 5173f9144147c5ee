"""Perspective-table phase: ask the agent for cases, persist the table artifact."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from testgen_agent.orchestrator.artifacts import (
    SavedArtifact,
    coerce_legacy_perspective_table,
    render_perspective_table,
    save_perspective_table,
)
from testgen_agent.orchestrator.backend.base import AgentProvider, AgentRunRequest, RunningTask
from testgen_agent.orchestrator.events import EventObserver, LogEvent, TestGenEvent, log_event, now_ms
from testgen_agent.orchestrator.invocation import run_provider_to_completion
from testgen_agent.orchestrator.models import PerspectiveCase
from testgen_agent.orchestrator.prompts import (
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
    PERSPECTIVE_MARKDOWN_BEGIN,
    PERSPECTIVE_MARKDOWN_END,
    build_perspective_prompt,
)
from testgen_agent.orchestrator.sanitization import sanitize_agent_log_message, truncate_text
from testgen_agent.orchestrator.structured import (
    ExtractionErr,
    extract_between_markers,
    parse_perspective_json_v1,
)

logger = logging.getLogger(__name__)

EXTRACTION_FAILURE_CASE_ID = "TC-E-EXTRACT-01"
_LOG_MAX_CHARS = 200_000


@dataclass(slots=True)
class PerspectiveStepResult:
    """Saved artifact plus the table markdown; only ``extracted`` tables seed generation."""

    saved: SavedArtifact
    markdown: str
    extracted: bool


@dataclass(slots=True)
class PerspectiveStepInput:
    base_task_id: str
    workspace_root: Path
    artifact_root: Path
    agent_command: str
    generation_label: str
    target_paths: Sequence[str]
    report_dir: str
    timestamp: str
    model: str | None = None
    timeout_ms: float | None = None
    strategy_text: str = ""
    reference_text: str = ""


def run_perspective_step(
    provider: AgentProvider,
    step: PerspectiveStepInput,
    *,
    observer: EventObserver,
    on_running_task: Callable[[RunningTask], None] | None = None,
) -> PerspectiveStepResult:
    task_id = f"{step.base_task_id}-perspectives"
    prompt = build_perspective_prompt(
        target_label=step.generation_label,
        target_paths=step.target_paths,
        strategy_text=step.strategy_text,
        reference_text=step.reference_text,
    )

    messages: list[str] = []

    def collect(event: TestGenEvent) -> None:
        observer(event)
        if isinstance(event, LogEvent):
            messages.append(event.message)

    exit_code = run_provider_to_completion(
        provider,
        AgentRunRequest(
            task_id=task_id,
            workspace_root=step.workspace_root,
            agent_command=step.agent_command,
            prompt=prompt,
            model=step.model,
            allow_write=False,
        ),
        observer=collect,
        timeout_ms=step.timeout_ms,
        on_running_task=on_running_task,
    )

    raw = "\n".join(messages)
    markdown, extracted = extract_perspective_markdown(raw, exit_code)
    if not extracted:
        logger.warning("Perspective extraction failed for %s", task_id)

    saved = save_perspective_table(
        workspace_root=step.artifact_root,
        report_dir=step.report_dir,
        timestamp=step.timestamp,
        target_label=step.generation_label,
        target_paths=step.target_paths,
        perspective_markdown=markdown,
        generated_at_ms=now_ms(),
    )
    observer(log_event(task_id, "info", f"Saved test perspective table: {saved.display_path}"))
    return PerspectiveStepResult(saved=saved, markdown=markdown, extracted=extracted)


def extract_perspective_markdown(raw: str, exit_code: int | None) -> tuple[str, bool]:
    """Turn the collected agent log into table markdown and an extraction flag.

    The JSON marker block wins over the legacy markdown block. Any failure
    yields a one-row error table with the sanitized log attached.
    """

    extracted_json = extract_between_markers(raw, PERSPECTIVE_JSON_BEGIN, PERSPECTIVE_JSON_END)
    if extracted_json:
        parsed = parse_perspective_json_v1(extracted_json)
        if isinstance(parsed, ExtractionErr):
            return build_failure_markdown(f"Failed to parse perspective JSON: {parsed.error}", raw), False
        if not parsed.value.cases:
            return build_failure_markdown("Perspective JSON contained no cases", raw), False
        return render_perspective_table(parsed.value.cases).rstrip(), True

    extracted_markdown = extract_between_markers(
        raw,
        PERSPECTIVE_MARKDOWN_BEGIN,
        PERSPECTIVE_MARKDOWN_END,
    )
    if extracted_markdown:
        normalized = coerce_legacy_perspective_table(extracted_markdown)
        if normalized is None:
            return build_failure_markdown("Could not extract the legacy markdown table", raw), False
        return normalized.rstrip(), True

    exit_text = "null" if exit_code is None else str(exit_code)
    return build_failure_markdown(f"Perspective extraction failed: provider exit={exit_text}", raw), False


def build_failure_markdown(reason: str, raw: str) -> str:
    table = render_perspective_table([PerspectiveCase(case_id=EXTRACTION_FAILURE_CASE_ID, notes=reason)])
    log_text = sanitize_agent_log_message(raw.strip() or "(log was empty)")
    details = "\n".join(
        [
            "<details>",
            "<summary>Extraction log (click to expand)</summary>",
            "",
            "```text",
            truncate_text(log_text, _LOG_MAX_CHARS),
            "```",
            "",
            "</details>",
            "",
        ],
    )
    return f"{table}\n{details}".rstrip()
