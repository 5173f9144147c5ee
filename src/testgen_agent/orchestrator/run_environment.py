"""Helpers around the test phase: nested-host advisory and the runner result file."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from testgen_agent.orchestrator.models import TestResultFile
from testgen_agent.orchestrator.structured import ExtractionErr, parse_test_result_file

logger = logging.getLogger(__name__)

TEST_RESULT_FILENAME = "test-result.json"
TEST_RESULT_ENV_VAR = "TESTGEN_AGENT_TEST_RESULT_FILE"

# Result files written up to this long before the run started still count as fresh.
FRESHNESS_SLACK_MS = 1000

_NESTED_HOST_SIGNATURES: tuple[str, ...] = (
    "vscode-test",
    "@vscode/test-electron",
    "@vscode/test-cli",
    "--extensiondevelopmentpath",
    "--extensiontestspath",
)
_RUN_TEST_SCRIPT = re.compile(r"(?:^|[\s/])out[/\\]test[/\\]runtest(?:\.js)?\b")
_PACKAGE_SCRIPT_COMMAND = re.compile(r"^(?:npm|pnpm|yarn)(?:\s+run)?\s+(?P<script>[\w:.-]+)\s*$")


def looks_like_nested_host_command(workspace_root: Path, command: str) -> bool:
    """Heuristic: does ``command`` launch an editor host inside the running one?

    Package-manager shorthands (``npm test``, ``yarn run test:unit``) are
    resolved through the ``scripts`` table of ``package.json``.
    """

    haystacks = [command.lower()]
    match = _PACKAGE_SCRIPT_COMMAND.match(command.strip())
    if match is not None:
        script = _read_package_script(workspace_root, match.group("script"))
        if script:
            haystacks.append(script.lower())
    return any(
        _RUN_TEST_SCRIPT.search(text) is not None
        or any(signature in text for signature in _NESTED_HOST_SIGNATURES)
        for text in haystacks
    )


def _read_package_script(workspace_root: Path, name: str) -> str | None:
    package_json = workspace_root / "package.json"
    try:
        payload = json.loads(package_json.read_text("utf-8"))
    except (OSError, ValueError):
        return None
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    if not isinstance(scripts, dict):
        return None
    script = scripts.get(name)
    return script if isinstance(script, str) else None


def result_file_path(workspace_root: Path) -> Path:
    return workspace_root / TEST_RESULT_FILENAME


def read_fresh_test_result(path: Path, started_at_ms: int) -> TestResultFile | None:
    """Parse the runner result file if it belongs to the run started at ``started_at_ms``.

    A file counts as fresh when its mtime or its own ``timestamp`` field is no
    older than the start minus a small slack. Stale, unreadable or malformed
    files are treated as absent.
    """

    threshold = started_at_ms - FRESHNESS_SLACK_MS
    try:
        mtime_ms = path.stat().st_mtime * 1000
        text = path.read_text("utf-8")
    except OSError:
        return None

    parsed = parse_test_result_file(text)
    if isinstance(parsed, ExtractionErr):
        logger.warning("Ignoring unparsable test result file %s: %s", path, parsed.error)
        return None

    result = parsed.value
    if mtime_ms >= threshold:
        return result
    if result.timestamp is not None and result.timestamp >= threshold:
        return result
    logger.info("Ignoring stale test result file %s", path)
    return None
