"""Line-oriented parser for mocha-style test reporter output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from testgen_agent.orchestrator.sanitization import strip_ansi

_PASS_LINE = re.compile(r"^\s*[✔✓]\s+(.+)$")
_FAIL_LINE = re.compile(r"^\s*(?:[✖✗]|\d+\))\s+(.+)$")
_SUITE_LINE = re.compile(r"^(\s{2,6})(\S.*)$")
_SOURCE_FILE_SUFFIX = re.compile(r"\.(ts|js)$")
_MAX_SUITE_INDENT = 4


@dataclass(slots=True)
class ParsedTestCase:
    suite: str
    name: str
    passed: bool


@dataclass(slots=True)
class ParsedTestOutput:
    """Counts recovered from stdout; ``parsed`` is False when nothing matched."""

    passed: int = 0
    failed: int = 0
    cases: list[ParsedTestCase] = field(default_factory=list)
    parsed: bool = False


def parse_mocha_output(stdout: str) -> ParsedTestOutput:
    cases: list[ParsedTestCase] = []
    current_suite = ""

    for line in strip_ansi(stdout).replace("\r\n", "\n").split("\n"):
        pass_match = _PASS_LINE.match(line)
        fail_match = None if pass_match else _FAIL_LINE.match(line)

        suite_match = _SUITE_LINE.match(line)
        if suite_match and not pass_match and not fail_match:
            indent = len(suite_match.group(1))
            suite_name = suite_match.group(2).strip()
            if indent <= _MAX_SUITE_INDENT or _SOURCE_FILE_SUFFIX.search(suite_name):
                current_suite = suite_name

        if pass_match:
            cases.append(ParsedTestCase(current_suite, pass_match.group(1).strip(), True))
        elif fail_match:
            cases.append(ParsedTestCase(current_suite, fail_match.group(1).strip(), False))

    passed = sum(1 for case in cases if case.passed)
    return ParsedTestOutput(
        passed=passed,
        failed=len(cases) - passed,
        cases=cases,
        parsed=bool(cases),
    )
