"""Domain models shared by extraction, aggregation and report rendering."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ExecutionRunner(str, Enum):
    """Where the test command runs."""

    LOCAL = "local"
    AGENT = "agent"


class TestCaseState(str, Enum):
    """Per-test outcome recorded in a result file."""

    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class PerspectiveCase:
    """One row of the test perspective table."""

    case_id: str = ""
    input_precondition: str = ""
    perspective: str = ""
    expected_result: str = ""
    notes: str = ""


@dataclass(slots=True)
class PerspectiveJsonV1:
    version: int
    cases: list[PerspectiveCase] = field(default_factory=list)


@dataclass(slots=True)
class TestExecutionJsonV1:
    """Execution payload reported back by the agent-mediated runner."""

    __test__ = False

    version: int
    exit_code: int | None
    signal: str | None
    duration_ms: float
    stdout: str
    stderr: str


@dataclass(slots=True)
class TestCaseRecord:
    __test__ = False

    suite: str
    title: str
    full_title: str
    state: TestCaseState
    duration_ms: float | None = None


@dataclass(slots=True)
class FailedTestRecord:
    title: str
    full_title: str
    error: str
    stack: str | None = None
    code: str | None = None
    expected: str | None = None
    actual: str | None = None


@dataclass(slots=True)
class TestResultFile:
    """Structured results written by the test runner, every field optional."""

    __test__ = False

    timestamp: float | None = None
    platform: str | None = None
    arch: str | None = None
    runtime_version: str | None = None
    host_version: str | None = None
    failures: float | None = None
    passes: float | None = None
    pending: float | None = None
    total: float | None = None
    duration_ms: float | None = None
    tests: list[TestCaseRecord] | None = None
    failed_tests: list[FailedTestRecord] | None = None


@dataclass(slots=True, frozen=True)
class TestExecutionResult:
    """Outcome of one test execution phase, immutable once built."""

    __test__ = False

    command: str
    cwd: str
    exit_code: int | None
    signal: str | None
    duration_ms: float
    stdout: str
    stderr: str
    skipped: bool = False
    skip_reason: str | None = None
    error_message: str | None = None
    test_result: TestResultFile | None = None
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    runner: ExecutionRunner = ExecutionRunner.LOCAL
