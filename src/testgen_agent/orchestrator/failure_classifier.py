"""Detect agent-mediated test runs that the agent refused to execute.

The vocabulary is heuristic and incomplete: every decision carries the rule
and pattern that fired so callers can log it.
"""

from __future__ import annotations

from dataclasses import dataclass

from testgen_agent.orchestrator.models import TestExecutionResult

REJECTION_CLASSIFIER_VERSION = 1

_REJECTION_WORD = "rejected"
_REJECTION_CONTEXT_WORDS: tuple[str, ...] = (
    "execution",
    "tool",
    "command",
)
_REJECTION_PHRASES: tuple[str, ...] = (
    "Tool execution rejected",
    "Execution rejected",
    "コマンドの実行が拒否されました",
    "コマンドが拒否されました",
    "実行が拒否されました",
    "手動で承認が必要",
)
_ERROR_MESSAGE_PATTERNS: tuple[str, ...] = (
    "ツール",
    "拒否",
)


@dataclass(slots=True)
class RejectionClassification:
    """Outcome of rejection detection for one agent-mediated result."""

    rejected: bool
    matched_rule: str
    matched_pattern: str | None = None

    def describe(self) -> str:
        if self.matched_pattern is None:
            return self.matched_rule
        return f"{self.matched_rule} ({self.matched_pattern!r})"


def classify_agent_test_result(result: TestExecutionResult) -> RejectionClassification:
    """Decide whether the agent-mediated result must be re-run locally."""

    stderr = result.stderr
    stderr_lower = stderr.lower()
    error_message = result.error_message or ""

    if _REJECTION_WORD in stderr_lower:
        pattern = _first_match(stderr_lower, _REJECTION_CONTEXT_WORDS)
        if pattern is not None:
            return RejectionClassification(
                rejected=True,
                matched_rule="rejection_vocabulary",
                matched_pattern=f"{_REJECTION_WORD}+{pattern}",
            )

    pattern = _first_match(stderr, _REJECTION_PHRASES)
    if pattern is not None:
        return RejectionClassification(
            rejected=True,
            matched_rule="rejection_phrase",
            matched_pattern=pattern,
        )

    pattern = _first_match(error_message, _ERROR_MESSAGE_PATTERNS)
    if pattern is not None:
        return RejectionClassification(
            rejected=True,
            matched_rule="rejection_error_message",
            matched_pattern=pattern,
        )

    if _is_empty_result_signature(result):
        return RejectionClassification(rejected=True, matched_rule="empty_result_signature")

    return RejectionClassification(rejected=False, matched_rule="accepted")


def _is_empty_result_signature(result: TestExecutionResult) -> bool:
    return (
        result.exit_code is None
        and result.duration_ms == 0
        and result.signal is None
        and not result.stdout.strip()
        and not result.stderr.strip()
        and not (result.error_message or "").strip()
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
