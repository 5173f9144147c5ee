"""Markdown report artifacts: perspective tables and test execution reports."""

from __future__ import annotations

import logging
import platform
import re
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from testgen_agent.orchestrator.aggregator import SummarySource, TestRunSummary, summarize_test_run
from testgen_agent.orchestrator.models import PerspectiveCase, TestCaseState, TestExecutionResult
from testgen_agent.orchestrator.sanitization import strip_ansi, truncate_text

logger = logging.getLogger(__name__)

PERSPECTIVE_PREFIX = "test-perspectives_"
EXECUTION_PREFIX = "test-execution_"
REPORT_MAX_CHARS = 200_000

PERSPECTIVE_TABLE_HEADER = (
    "| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) "
    "| Expected Result | Notes |"
)
PERSPECTIVE_TABLE_SEPARATOR = "|---|---|---|---|---|"

_TABLE_PIPE_COUNT = 6
_HEADER_KEYWORDS: tuple[str, ...] = ("Case ID", "Input", "Expected", "Notes")
_SEPARATOR_LINE = re.compile(r"^\|(?:\s*-+\s*\|)+$")
_WHITESPACE_RUN = re.compile(r"\s+")
_ARTIFACT_NAME = re.compile(r"^(?P<stamp>\d{8}_\d{6})\.md$")

_STATE_MARKS = {
    TestCaseState.PASSED: "✅",
    TestCaseState.FAILED: "❌",
    TestCaseState.PENDING: "⏸",
    TestCaseState.UNKNOWN: "?",
}


@dataclass(slots=True)
class SavedArtifact:
    absolute_path: Path
    relative_path: str | None = None

    @property
    def display_path(self) -> str:
        return self.relative_path or str(self.absolute_path)


def format_timestamp(moment: datetime) -> str:
    """``YYYYMMDD_HHmmss`` in local time; lexical order equals chronological order."""

    return moment.strftime("%Y%m%d_%H%M%S")


def format_local_iso(timestamp_ms: int) -> str:
    """Readable local timestamp with UTC offset and millisecond precision."""

    moment = datetime.fromtimestamp(timestamp_ms / 1000).astimezone()
    return moment.isoformat(timespec="milliseconds")


def resolve_dir_absolute(workspace_root: Path, directory: str) -> Path:
    trimmed = directory.strip()
    if not trimmed:
        return workspace_root
    candidate = Path(trimmed)
    return candidate if candidate.is_absolute() else workspace_root / candidate


def normalize_table_cell(value: str) -> str:
    text = value.replace("\r\n", "\n").replace("\n", " ")
    text = _WHITESPACE_RUN.sub(" ", text).strip()
    return text.replace("|", "\\|")


def render_perspective_table(cases: Sequence[PerspectiveCase]) -> str:
    """Fixed five-column table, one row per case, terminated by a newline."""

    rows = [PERSPECTIVE_TABLE_HEADER, PERSPECTIVE_TABLE_SEPARATOR]
    for case in cases:
        cells = (
            case.case_id,
            case.input_precondition,
            case.perspective,
            case.expected_result,
            case.notes,
        )
        rows.append("| " + " | ".join(normalize_table_cell(cell) for cell in cells) + " |")
    return "\n".join(rows) + "\n"


def coerce_legacy_perspective_table(markdown: str) -> str | None:
    """Normalize a markdown table emitted by older prompts to the fixed header.

    Returns None unless a five-column header line is followed by a separator.
    """

    lines = markdown.replace("\r\n", "\n").split("\n")
    header_index = next(
        (index for index, line in enumerate(lines) if _is_likely_header(line)),
        None,
    )
    if header_index is None:
        return None
    separator = lines[header_index + 1].strip() if header_index + 1 < len(lines) else ""
    if not _is_likely_separator(separator):
        return None

    body: list[str] = []
    for line in lines[header_index + 2 :]:
        if not line.strip().startswith("|"):
            break
        body.append(line.rstrip())
    return "\n".join([PERSPECTIVE_TABLE_HEADER, PERSPECTIVE_TABLE_SEPARATOR, *body]) + "\n"


def _is_likely_header(line: str) -> bool:
    trimmed = line.strip()
    if trimmed == PERSPECTIVE_TABLE_HEADER:
        return True
    if trimmed.count("|") != _TABLE_PIPE_COUNT:
        return False
    return any(keyword in trimmed for keyword in _HEADER_KEYWORDS)


def _is_likely_separator(line: str) -> bool:
    if not _SEPARATOR_LINE.match(line):
        return False
    return line.count("|") == _TABLE_PIPE_COUNT


def build_perspective_markdown(
    *,
    generated_at_ms: int,
    target_label: str,
    target_paths: Sequence[str],
    perspective_markdown: str,
) -> str:
    table = perspective_markdown.strip()
    return "\n".join(
        [
            "# Test Perspectives (auto-generated)",
            "",
            f"- Generated at: {format_local_iso(generated_at_ms)}",
            f"- Target: {target_label}",
            "- Target files:",
            _target_list(target_paths),
            "",
            "---",
            "",
            table or "(perspective generation returned nothing)",
            "",
        ],
    )


def build_execution_markdown(  # noqa: PLR0913
    *,
    generated_at_ms: int,
    generation_label: str,
    target_paths: Sequence[str],
    result: TestExecutionResult,
    model: str | None = None,
    execution_log: str = "",
) -> str:
    summary = summarize_test_run(result)
    model_line = f"- model: {model.strip()}" if model and model.strip() else "- model: (auto)"

    sections: list[str] = [
        "# Test Execution Report (auto-generated)",
        "",
        f"- Generated at: {format_local_iso(generated_at_ms)}",
        f"- Generation target: {generation_label}",
        model_line,
        "- Target files:",
        _target_list(target_paths),
        "",
        "## Environment",
        f"- OS: {sys.platform} ({platform.machine() or 'unknown'})",
        f"- Python: {platform.python_version()}",
        "",
        "## Command",
        _code_block("bash", result.command),
        "",
        "## Result",
        "- status: skipped" if result.skipped else "- status: executed",
        f"- runner: {result.runner.value}",
    ]
    if result.skipped and result.skip_reason and result.skip_reason.strip():
        sections.append(f"- skipReason: {result.skip_reason.strip()}")
    sections.extend(
        [
            f"- exitCode: {_nullable(result.exit_code)}",
            f"- signal: {_nullable(result.signal)}",
            f"- durationMs: {_format_number(result.duration_ms)}",
        ],
    )
    if result.error_message:
        sections.append(f"- spawn error: {result.error_message}")

    sections.extend(["", "## Test Result Summary", *_summary_lines(summary)])

    sections.extend(["", "## Detailed Logs"])
    sections.extend(_details_block("stdout", result.stdout))
    sections.extend(_details_block("stderr", result.stderr))
    sections.extend(_details_block("Execution log", execution_log))
    sections.append("")
    return "\n".join(sections)


def save_perspective_table(  # noqa: PLR0913
    *,
    workspace_root: Path,
    report_dir: str,
    timestamp: str,
    target_label: str,
    target_paths: Sequence[str],
    perspective_markdown: str,
    generated_at_ms: int,
) -> SavedArtifact:
    content = build_perspective_markdown(
        generated_at_ms=generated_at_ms,
        target_label=target_label,
        target_paths=target_paths,
        perspective_markdown=perspective_markdown,
    )
    return _write_artifact(
        workspace_root,
        report_dir,
        f"{PERSPECTIVE_PREFIX}{timestamp}.md",
        content,
    )


def save_execution_report(  # noqa: PLR0913
    *,
    workspace_root: Path,
    report_dir: str,
    timestamp: str,
    generation_label: str,
    target_paths: Sequence[str],
    result: TestExecutionResult,
    generated_at_ms: int,
    model: str | None = None,
    execution_log: str = "",
) -> SavedArtifact:
    content = build_execution_markdown(
        generated_at_ms=generated_at_ms,
        generation_label=generation_label,
        target_paths=target_paths,
        result=result,
        model=model,
        execution_log=execution_log,
    )
    return _write_artifact(
        workspace_root,
        report_dir,
        f"{EXECUTION_PREFIX}{timestamp}.md",
        content,
    )


def find_latest_artifact(workspace_root: Path, report_dir: str, prefix: str) -> Path | None:
    """Newest ``<prefix>YYYYMMDD_HHmmss.md`` regular file, or None."""

    directory = resolve_dir_absolute(workspace_root, report_dir)
    if not directory.is_dir():
        return None

    latest: tuple[str, Path] | None = None
    for entry in directory.iterdir():
        if not entry.name.startswith(prefix) or not entry.is_file():
            continue
        match = _ARTIFACT_NAME.match(entry.name[len(prefix) :])
        if match is None:
            continue
        stamp = match.group("stamp")
        if latest is None or stamp > latest[0]:
            latest = (stamp, entry)
    return latest[1] if latest else None


def _write_artifact(workspace_root: Path, report_dir: str, filename: str, content: str) -> SavedArtifact:
    directory = resolve_dir_absolute(workspace_root, report_dir)
    directory.mkdir(parents=True, exist_ok=True)
    absolute_path = directory / filename
    absolute_path.write_text(content, "utf-8")
    logger.info("Saved artifact %s", absolute_path)
    return SavedArtifact(
        absolute_path=absolute_path,
        relative_path=_workspace_relative(workspace_root, absolute_path),
    )


def _workspace_relative(workspace_root: Path, absolute_path: Path) -> str | None:
    try:
        return absolute_path.relative_to(workspace_root).as_posix()
    except ValueError:
        return None


def _summary_lines(summary: TestRunSummary) -> list[str]:
    if summary.source is SummarySource.SKIPPED:
        return ["- verdict: skipped"]
    verdict = "passed" if summary.success else "failed"
    lines = [
        f"- verdict: {verdict}",
        f"- passed: {_count(summary.passed)}",
        f"- failed: {_count(summary.failed)}",
        f"- pending: {_count(summary.pending)}",
        f"- total: {_count(summary.total)}",
        f"- source: {summary.source.value}",
    ]
    if summary.cases:
        lines.extend(["", "| Suite | Test | Result |", "|---|---|---|"])
        lines.extend(
            f"| {normalize_table_cell(case.suite)} | {normalize_table_cell(case.name)} "
            f"| {_STATE_MARKS[case.state]} |"
            for case in summary.cases
        )
    return lines


def _details_block(title: str, content: str) -> list[str]:
    cleaned = strip_ansi(content).strip()
    if not cleaned:
        return []
    return [
        "",
        "<details>",
        f"<summary>{title} (click to expand)</summary>",
        "",
        _code_block("text", truncate_text(cleaned, REPORT_MAX_CHARS)),
        "",
        "</details>",
    ]


def _target_list(target_paths: Sequence[str]) -> str:
    if not target_paths:
        return "- (none)"
    return "\n".join(f"- {path}" for path in target_paths)


def _code_block(language: str, content: str) -> str:
    return f"```{language}\n{content}\n```"


def _nullable(value: object) -> str:
    return "null" if value is None else str(value)


def _count(value: int | None) -> str:
    return "unknown" if value is None else str(value)


def _format_number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else f"{value:.1f}"
