"""Resolve pass/fail/pending/total counts and a verdict for one test execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from testgen_agent.orchestrator.models import TestCaseState, TestExecutionResult, TestResultFile
from testgen_agent.orchestrator.output_parser import parse_mocha_output


class SummarySource(str, Enum):
    """Which data source the counts were taken from."""

    SKIPPED = "skipped"
    STRUCTURED_TESTS = "structured-tests"
    STRUCTURED_COUNTERS = "structured-counters"
    STDOUT = "stdout"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class SummaryCase:
    suite: str
    name: str
    state: TestCaseState


@dataclass(slots=True)
class TestRunSummary:
    """Resolved counts; None means unknown. ``success`` is None when skipped."""

    __test__ = False

    source: SummarySource
    passed: int | None = None
    failed: int | None = None
    pending: int | None = None
    total: int | None = None
    success: bool | None = None
    cases: list[SummaryCase] = field(default_factory=list)


def summarize_test_run(result: TestExecutionResult) -> TestRunSummary:
    """Apply the source precedence, then the fail-closed verdict.

    Precedence: skipped, structured ``tests[]``, structured counters, stdout
    parsing, unknown. A non-empty ``tests[]`` makes the counters irrelevant.
    """

    if result.skipped:
        return TestRunSummary(source=SummarySource.SKIPPED)

    summary = _resolve_counts(result)
    summary.success = resolve_success(result.exit_code, summary.failed)
    return summary


def resolve_success(exit_code: int | None, failed: int | None) -> bool:
    """Fail-closed verdict.

    A null exit code passes only when zero failures are affirmatively known.
    A non-zero exit code never passes.
    """

    if exit_code is None:
        return failed == 0
    if exit_code != 0:
        return False
    return failed is None or failed == 0


def _resolve_counts(result: TestExecutionResult) -> TestRunSummary:
    test_result = result.test_result
    if test_result is not None and test_result.tests:
        return _from_structured_tests(test_result)
    if test_result is not None and _has_counters(test_result):
        return _from_counters(test_result)

    parsed = parse_mocha_output(result.stdout)
    if parsed.parsed:
        return TestRunSummary(
            source=SummarySource.STDOUT,
            passed=parsed.passed,
            failed=parsed.failed,
            total=parsed.passed + parsed.failed,
            cases=[
                SummaryCase(
                    suite=case.suite,
                    name=case.name,
                    state=TestCaseState.PASSED if case.passed else TestCaseState.FAILED,
                )
                for case in parsed.cases
            ],
        )
    return TestRunSummary(source=SummarySource.UNKNOWN)


def _from_structured_tests(test_result: TestResultFile) -> TestRunSummary:
    tests = test_result.tests or []
    states = [test.state for test in tests]
    return TestRunSummary(
        source=SummarySource.STRUCTURED_TESTS,
        passed=states.count(TestCaseState.PASSED),
        failed=states.count(TestCaseState.FAILED),
        pending=states.count(TestCaseState.PENDING),
        total=len(tests),
        cases=[
            SummaryCase(suite=test.suite, name=test.title or test.full_title, state=test.state)
            for test in tests
        ],
    )


def _has_counters(test_result: TestResultFile) -> bool:
    counters = (test_result.passes, test_result.failures, test_result.pending, test_result.total)
    return any(value is not None for value in counters)


def _from_counters(test_result: TestResultFile) -> TestRunSummary:
    passed = _as_count(test_result.passes)
    failed = _as_count(test_result.failures)
    pending = _as_count(test_result.pending)
    total = _as_count(test_result.total)
    if total is None:
        total = sum(value for value in (passed, failed, pending) if value is not None)
    return TestRunSummary(
        source=SummarySource.STRUCTURED_COUNTERS,
        passed=passed,
        failed=failed,
        pending=pending,
        total=total,
    )


def _as_count(value: float | None) -> int | None:
    return None if value is None else int(value)
