"""Prompt builders for the perspective, generation and agent test-run phases."""

from __future__ import annotations

from collections.abc import Sequence

PERSPECTIVE_JSON_BEGIN = "<!-- BEGIN TEST PERSPECTIVES JSON -->"
PERSPECTIVE_JSON_END = "<!-- END TEST PERSPECTIVES JSON -->"
PERSPECTIVE_MARKDOWN_BEGIN = "<!-- BEGIN TEST PERSPECTIVES -->"
PERSPECTIVE_MARKDOWN_END = "<!-- END TEST PERSPECTIVES -->"

EXECUTION_JSON_BEGIN = "<!-- BEGIN TEST EXECUTION JSON -->"
EXECUTION_JSON_END = "<!-- END TEST EXECUTION JSON -->"
EXECUTION_RESULT_BEGIN = "<!-- BEGIN TEST EXECUTION RESULT -->"
EXECUTION_RESULT_END = "<!-- END TEST EXECUTION RESULT -->"
STDOUT_BEGIN = "<!-- BEGIN STDOUT -->"
STDOUT_END = "<!-- END STDOUT -->"
STDERR_BEGIN = "<!-- BEGIN STDERR -->"
STDERR_END = "<!-- END STDERR -->"

_PERSPECTIVE_EXAMPLE = """\
{
  "version": 1,
  "cases": [
    {
      "caseId": "TC-N-01",
      "inputPrecondition": "...",
      "perspective": "Equivalence - normal",
      "expectedResult": "...",
      "notes": "-"
    }
  ]
}"""

_EXECUTION_EXAMPLE = """\
{
  "version": 1,
  "exitCode": 0,
  "signal": null,
  "durationMs": 1234,
  "stdout": "line1\\nline2",
  "stderr": ""
}"""


def build_perspective_prompt(
    *,
    target_label: str,
    target_paths: Sequence[str],
    strategy_text: str = "",
    reference_text: str = "",
) -> str:
    """Ask for a perspective table only, as marker-wrapped JSON."""

    targets = "\n".join(f"- {path}" for path in target_paths) or "- (none)"
    parts = [
        "You are a software engineer.",
        "Create **only** a test perspective table for the target below.",
        "Do NOT generate test code, do NOT edit files, and do NOT output any additional explanation.",
        "",
        "## Target",
        f"- Run type: {target_label}",
        "- Target files:",
        targets,
        "",
        "## Output requirements (required)",
        "- Output **JSON only** (do NOT output a Markdown table)",
        "- Wrap the entire output with the following markers (marker lines must be included):",
        f"  - {PERSPECTIVE_JSON_BEGIN}",
        f"  - {PERSPECTIVE_JSON_END}",
        "- JSON must follow this schema (keys must match exactly):",
        '  - Root: `{ "version": 1, "cases": PerspectiveCase[] }`',
        '  - `PerspectiveCase`: `{ "caseId": string, "inputPrecondition": string, '
        '"perspective": string, "expectedResult": string, "notes": string }`',
        "- Keep each field single-line where possible",
        "- Cover normal, error and boundary cases. Include at least: "
        "`0 / min / max / ±1 / empty / null`",
        "- **Include at least as many failure cases as success cases**",
        "",
        "## Tooling constraints (required)",
        "- Do NOT run shell commands (no `git diff`, `npm test`, etc.)",
        "- Do NOT launch GUI apps",
        "- Do NOT edit or add files",
    ]
    if strategy_text.strip():
        parts.extend(
            [
                "",
                "## Test Strategy Rules (MUST)",
                "The following rules are mandatory. Follow them exactly.",
                strategy_text.strip(),
            ],
        )
    if reference_text.strip():
        parts.extend(
            [
                "",
                "## Reference (diff / additional context)",
                "Use this only if needed.",
                "",
                reference_text.strip(),
            ],
        )
    parts.extend(
        [
            "",
            "## Output format (required)",
            PERSPECTIVE_JSON_BEGIN,
            _PERSPECTIVE_EXAMPLE,
            PERSPECTIVE_JSON_END,
        ],
    )
    return "\n".join(parts)


def append_perspective_to_prompt(base_prompt: str, perspective_markdown: str) -> str:
    """Inject an extracted table and restrict the generation scope to test code."""

    return "\n".join(
        [
            base_prompt,
            "",
            "## Generated test perspective table (required)",
            "Implement **every case** listed in the table below as a test.",
            "Cover all cases and reference the matching Case ID in a comment on each test.",
            "",
            "## Important: the perspective table is already saved (required)",
            "- The table has already been persisted under docs/ by the pipeline.",
            "- **Do NOT save the table to another file** "
            "(e.g. do not create `test_perspectives.md` at the workspace root).",
            "- **Do NOT create or edit docs/ or *.md files** (change test code only).",
            "",
            perspective_markdown,
        ],
    )


def build_agent_test_prompt(test_command: str) -> str:
    """Read-only, run-once instructions with the JSON marker contract."""

    return "\n".join(
        [
            "You are the test runner.",
            "Run the given test command and return its stdout, stderr and exit code "
            "in a machine-readable form.",
            "",
            "## Constraints (required)",
            "- **Do NOT edit or create files** (read-only)",
            "- Do NOT start debuggers, watchers or interactive sessions",
            "- Run the test command **exactly once**",
            "- Avoid any other commands except the bare minimum (such as cd)",
            "",
            "## Command to run (required)",
            "Run this as-is and capture its exit code.",
            "",
            "```bash",
            test_command,
            "```",
            "",
            "## Output format (required)",
            "- Reply with **JSON only (no code fence)**",
            f"- Wrap it in these markers: {EXECUTION_JSON_BEGIN} ... {EXECUTION_JSON_END}",
            "- Output nothing outside the markers",
            "- JSON schema v1:",
            '- `{ "version": 1, "exitCode": number|null, "signal": string|null, '
            '"durationMs": number, "stdout": string, "stderr": string }`',
            "- stdout/stderr are **strings**; encode newlines as `\\n` (no raw newlines)",
            "",
            EXECUTION_JSON_BEGIN,
            _EXECUTION_EXAMPLE,
            EXECUTION_JSON_END,
            "",
        ],
    )
