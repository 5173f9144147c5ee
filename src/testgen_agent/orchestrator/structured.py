"""Tolerant extraction of versioned JSON payloads from free-form agent text.

Agents wrap payloads in code fences, surround them with prose and emit raw
newlines inside string literals. Extraction runs in a fixed order:

1. strip an enclosing code fence;
2. escape raw CR/LF characters that sit inside JSON string literals;
3. parse directly when the text opens with a JSON token, otherwise parse the
   span between the first ``{`` and the last ``}``;
4. validate the shape (object, ``version``, array fields);
5. coerce fields leniently, skipping malformed array items.

Failures are reported as ``ExtractionErr`` with a code from a closed set,
never raised.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Generic, Literal, TypeVar

from testgen_agent.orchestrator.models import (
    FailedTestRecord,
    PerspectiveCase,
    PerspectiveJsonV1,
    TestCaseRecord,
    TestCaseState,
    TestExecutionJsonV1,
    TestResultFile,
)

T = TypeVar("T")

SUPPORTED_VERSION = 1

ERROR_EMPTY = "empty"
ERROR_INVALID_JSON_PREFIX = "invalid-json:"
ERROR_JSON_NOT_OBJECT = "json-not-object"
ERROR_UNSUPPORTED_VERSION = "unsupported-version"
ERROR_CASES_NOT_ARRAY = "cases-not-array"
ERROR_NO_JSON_OBJECT = "no-json-object"

_FENCE = "```"
_JSON_LITERAL_PREFIXES = ("null", "true", "false")


@dataclass(slots=True, frozen=True)
class ExtractionOk(Generic[T]):
    value: T
    ok: Literal[True] = True


@dataclass(slots=True, frozen=True)
class ExtractionErr:
    error: str
    ok: Literal[False] = False

    @property
    def code(self) -> str:
        """Error discriminant without the free-form detail."""

        if self.error.startswith(ERROR_INVALID_JSON_PREFIX):
            return ERROR_INVALID_JSON_PREFIX.rstrip(":")
        return self.error


ExtractionResult = ExtractionOk[T] | ExtractionErr


def strip_code_fence(text: str) -> str:
    """Return the interior of an enclosing code fence, or ``text`` unchanged.

    The opening fence line must be followed by a newline and a closing fence
    must exist after it.
    """

    trimmed = text.strip()
    if not trimmed.startswith(_FENCE):
        return text
    first_newline = trimmed.find("\n")
    if first_newline == -1:
        return text
    closing = trimmed.rfind(_FENCE)
    if closing <= first_newline:
        return text
    return trimmed[first_newline + 1 : closing].strip()


def escape_newlines_in_json_strings(text: str) -> str:
    """Rewrite raw CR/LF inside string literals as ``\\r``/``\\n`` escapes."""

    out: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if not in_string:
            if char == '"':
                in_string = True
            out.append(char)
            continue
        if escaped:
            escaped = False
            out.append(char)
            continue
        if char == "\\":
            escaped = True
            out.append(char)
        elif char == '"':
            in_string = False
            out.append(char)
        elif char == "\n":
            out.append("\\n")
        elif char == "\r":
            out.append("\\r")
        else:
            out.append(char)
    return "".join(out)


def parse_json_payload(text: str) -> ExtractionResult[Any]:
    """Locate and parse the JSON value carried by ``text``."""

    trimmed = text.strip()
    if not trimmed:
        return ExtractionErr(ERROR_EMPTY)
    unfenced = strip_code_fence(trimmed).strip()
    if not unfenced:
        return ExtractionErr(ERROR_EMPTY)
    normalized = escape_newlines_in_json_strings(unfenced)

    if _opens_with_json_token(normalized):
        return _loads(normalized)

    start = normalized.find("{")
    end = normalized.rfind("}")
    if start == -1 or end == -1 or end < start:
        return ExtractionErr(ERROR_NO_JSON_OBJECT)
    return _loads(normalized[start : end + 1])


def parse_perspective_json_v1(text: str) -> ExtractionResult[PerspectiveJsonV1]:
    loaded = _load_versioned_object(text)
    if isinstance(loaded, ExtractionErr):
        return loaded
    payload = loaded.value

    raw_cases = payload.get("cases")
    if not isinstance(raw_cases, list):
        return ExtractionErr(ERROR_CASES_NOT_ARRAY)

    cases = [
        PerspectiveCase(
            case_id=string_or_empty(item.get("caseId")),
            input_precondition=string_or_empty(item.get("inputPrecondition")),
            perspective=string_or_empty(item.get("perspective")),
            expected_result=string_or_empty(item.get("expectedResult")),
            notes=string_or_empty(item.get("notes")),
        )
        for item in raw_cases
        if isinstance(item, dict)
    ]
    return ExtractionOk(PerspectiveJsonV1(version=SUPPORTED_VERSION, cases=cases))


def parse_test_execution_json_v1(text: str) -> ExtractionResult[TestExecutionJsonV1]:
    loaded = _load_versioned_object(text)
    if isinstance(loaded, ExtractionErr):
        return loaded
    payload = loaded.value

    exit_code = number_or_none(payload.get("exitCode"))
    signal = payload.get("signal")
    duration = number_or_none(payload.get("durationMs"))
    return ExtractionOk(
        TestExecutionJsonV1(
            version=SUPPORTED_VERSION,
            exit_code=int(exit_code) if exit_code is not None else None,
            signal=signal if isinstance(signal, str) and signal else None,
            duration_ms=duration if duration is not None else 0,
            stdout=string_or_empty(payload.get("stdout")),
            stderr=string_or_empty(payload.get("stderr")),
        ),
    )


def parse_test_result_file(text: str) -> ExtractionResult[TestResultFile]:
    """Parse a runner-written result file. No ``version`` field is required."""

    parsed = parse_json_payload(text)
    if isinstance(parsed, ExtractionErr):
        return parsed
    payload = parsed.value
    if not isinstance(payload, dict):
        return ExtractionErr(ERROR_JSON_NOT_OBJECT)

    return ExtractionOk(
        TestResultFile(
            timestamp=number_or_none(payload.get("timestamp")),
            platform=_optional_string(payload.get("platform")),
            arch=_optional_string(payload.get("arch")),
            runtime_version=_optional_string(
                payload.get("runtimeVersion", payload.get("nodeVersion")),
            ),
            host_version=_optional_string(
                payload.get("hostVersion", payload.get("vscodeVersion")),
            ),
            failures=number_or_none(payload.get("failures")),
            passes=number_or_none(payload.get("passes")),
            pending=number_or_none(payload.get("pending")),
            total=number_or_none(payload.get("total")),
            duration_ms=number_or_none(payload.get("durationMs")),
            tests=_parse_tests(payload.get("tests")),
            failed_tests=_parse_failed_tests(payload.get("failedTests")),
        ),
    )


def extract_between_markers(text: str, begin: str, end: str) -> str | None:
    """Trimmed text between the first ``begin`` and the next ``end`` after it."""

    start = text.find(begin)
    if start == -1:
        return None
    content_start = start + len(begin)
    stop = text.find(end, content_start)
    if stop == -1:
        return None
    return text[content_start:stop].strip()


def string_or_empty(value: object) -> str:
    """Coerce a scalar to text; null, containers and non-finite numbers become ``""``."""

    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return ""
        return str(int(value)) if value.is_integer() else str(value)
    return ""


def number_or_none(value: object) -> int | float | None:
    """Accept a finite number or a numeric string such as ``"0"``."""

    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            number = float(stripped)
        except ValueError:
            return None
        if not math.isfinite(number):
            return None
        return int(number) if number.is_integer() else number
    return None


def _load_versioned_object(text: str) -> ExtractionResult[dict[str, Any]]:
    parsed = parse_json_payload(text)
    if isinstance(parsed, ExtractionErr):
        return parsed
    payload = parsed.value
    if not isinstance(payload, dict):
        return ExtractionErr(ERROR_JSON_NOT_OBJECT)
    if not _is_supported_version(payload.get("version")):
        return ExtractionErr(ERROR_UNSUPPORTED_VERSION)
    return ExtractionOk(payload)


def _is_supported_version(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return False
    return value == SUPPORTED_VERSION


def _opens_with_json_token(text: str) -> bool:
    if text[:1] in ("{", "[", '"'):
        return True
    return text.startswith(_JSON_LITERAL_PREFIXES)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Unexpected token {name}")


def _loads(raw: str) -> ExtractionResult[Any]:
    try:
        return ExtractionOk(json.loads(raw, parse_constant=_reject_constant))
    except (ValueError, RecursionError) as error:
        # Pathologically nested input exhausts the decoder stack.
        return ExtractionErr(f"{ERROR_INVALID_JSON_PREFIX}{error}")


def _optional_string(value: object) -> str | None:
    return value if isinstance(value, str) else None


def _optional_text(value: object) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def _parse_tests(raw: object) -> list[TestCaseRecord] | None:
    if not isinstance(raw, list):
        return None
    records: list[TestCaseRecord] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        state_raw = item.get("state")
        try:
            state = TestCaseState(state_raw) if isinstance(state_raw, str) else TestCaseState.UNKNOWN
        except ValueError:
            state = TestCaseState.UNKNOWN
        records.append(
            TestCaseRecord(
                suite=string_or_empty(item.get("suite")),
                title=string_or_empty(item.get("title")),
                full_title=string_or_empty(item.get("fullTitle")),
                state=state,
                duration_ms=number_or_none(item.get("durationMs")),
            ),
        )
    return records


def _parse_failed_tests(raw: object) -> list[FailedTestRecord] | None:
    if not isinstance(raw, list):
        return None
    return [
        FailedTestRecord(
            title=string_or_empty(item.get("title")),
            full_title=string_or_empty(item.get("fullTitle")),
            error=string_or_empty(item.get("error")),
            stack=_optional_string(item.get("stack")),
            code=_optional_string(item.get("code")),
            expected=_optional_text(item.get("expected")),
            actual=_optional_text(item.get("actual")),
        )
        for item in raw
        if isinstance(item, dict)
    ]
