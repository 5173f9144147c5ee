from __future__ import annotations

import json
import os
import time
from pathlib import Path

import allure

from testgen_agent.orchestrator.cleanup import cleanup_unexpected_perspective_files
from testgen_agent.orchestrator.prompts import (
    EXECUTION_JSON_BEGIN,
    EXECUTION_JSON_END,
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
    PERSPECTIVE_MARKDOWN_BEGIN,
    PERSPECTIVE_MARKDOWN_END,
    append_perspective_to_prompt,
    build_agent_test_prompt,
    build_perspective_prompt,
)
from testgen_agent.orchestrator.run_environment import (
    looks_like_nested_host_command,
    read_fresh_test_result,
    result_file_path,
)

pytestmark = [
    allure.epic("Pipeline Orchestration"),
    allure.feature("Prompts & Workspace Guards"),
]


def test_perspective_prompt_lists_targets_and_optional_sections() -> None:
    prompt = build_perspective_prompt(
        target_label="staged changes",
        target_paths=["src/a.ts", "src/b.ts"],
        strategy_text="Always test null input.",
        reference_text="diff --git a/src/a.ts",
    )

    assert "- Run type: staged changes" in prompt
    assert "- src/a.ts\n- src/b.ts" in prompt
    assert "## Test Strategy Rules (MUST)" in prompt
    assert "Always test null input." in prompt
    assert "diff --git a/src/a.ts" in prompt
    assert prompt.count(PERSPECTIVE_JSON_BEGIN) == 2
    assert prompt.rstrip().endswith(PERSPECTIVE_JSON_END)


def test_perspective_prompt_without_optional_sections() -> None:
    prompt = build_perspective_prompt(target_label="file", target_paths=[])

    assert "- (none)" in prompt
    assert "Test Strategy Rules" not in prompt
    assert "## Reference" not in prompt


def test_append_perspective_keeps_base_prompt_first() -> None:
    prompt = append_perspective_to_prompt("BASE", "| Case ID |")

    assert prompt.startswith("BASE\n")
    assert prompt.endswith("| Case ID |")
    assert "Do NOT create or edit docs/" in prompt


def test_agent_test_prompt_embeds_command_and_markers() -> None:
    prompt = build_agent_test_prompt("npm run test:unit")

    assert "```bash\nnpm run test:unit\n```" in prompt
    assert EXECUTION_JSON_BEGIN in prompt
    assert EXECUTION_JSON_END in prompt
    assert "exactly once" in prompt


def test_cleanup_removes_only_marked_root_files(tmp_path: Path) -> None:
    marked = tmp_path / "test_perspectives.md"
    marked.write_text(f"{PERSPECTIVE_MARKDOWN_BEGIN}\n| a |\n{PERSPECTIVE_MARKDOWN_END}\n", "utf-8")
    marked_json = tmp_path / "test_perspectives_output.json"
    marked_json.write_text(f"{PERSPECTIVE_JSON_BEGIN}{{}}{PERSPECTIVE_JSON_END}", "utf-8")
    user_file = tmp_path / "test_perspectives_notes.md"
    user_file.write_text("my own notes", "utf-8")
    half_marked = tmp_path / "test_perspectives_half.md"
    half_marked.write_text(PERSPECTIVE_MARKDOWN_BEGIN, "utf-8")
    nested = tmp_path / "docs" / "test_perspectives.md"
    nested.parent.mkdir()
    nested.write_text(f"{PERSPECTIVE_MARKDOWN_BEGIN}{PERSPECTIVE_MARKDOWN_END}", "utf-8")

    results = cleanup_unexpected_perspective_files(tmp_path)

    assert sorted(result.relative_path for result in results) == [
        "test_perspectives.md",
        "test_perspectives_output.json",
    ]
    assert all(result.deleted for result in results)
    assert not marked.exists()
    assert not marked_json.exists()
    assert user_file.exists()
    assert half_marked.exists()
    assert nested.exists()


def test_nested_host_detected_from_command(tmp_path: Path) -> None:
    assert looks_like_nested_host_command(tmp_path, "npx vscode-test --label unit") is True
    assert looks_like_nested_host_command(tmp_path, "pytest -q") is False


def test_nested_host_detected_from_package_script(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"test": "vscode-test", "test:unit": "mocha out/unit"}}),
        "utf-8",
    )

    assert looks_like_nested_host_command(tmp_path, "npm test") is True
    assert looks_like_nested_host_command(tmp_path, "npm run test") is True
    assert looks_like_nested_host_command(tmp_path, "yarn run test:unit") is False


def test_nested_host_detected_from_extension_run_test_script(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"test": "node ./out/test/runTest.js"}}),
        "utf-8",
    )

    assert looks_like_nested_host_command(tmp_path, "npm test") is True
    assert looks_like_nested_host_command(tmp_path, "node out/test/runTest") is True
    assert looks_like_nested_host_command(tmp_path, r"node out\test\runTest.js") is True
    assert looks_like_nested_host_command(tmp_path, "node layout/test/runTests.js") is False


def test_nested_host_ignores_unreadable_package_json(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("{not json", "utf-8")

    assert looks_like_nested_host_command(tmp_path, "npm test") is False


def test_fresh_result_file_is_read(tmp_path: Path) -> None:
    path = result_file_path(tmp_path)
    path.write_text(json.dumps({"passes": 2, "failures": 0}), "utf-8")

    result = read_fresh_test_result(path, int(time.time() * 1000))

    assert result is not None
    assert result.passes == 2


def test_stale_result_file_is_ignored_unless_its_timestamp_is_fresh(tmp_path: Path) -> None:
    path = result_file_path(tmp_path)
    started_at_ms = int(time.time() * 1000)
    path.write_text(json.dumps({"passes": 1}), "utf-8")
    old = (started_at_ms - 60_000) / 1000
    os.utime(path, (old, old))

    assert read_fresh_test_result(path, started_at_ms) is None

    path.write_text(json.dumps({"passes": 1, "timestamp": started_at_ms + 5}), "utf-8")
    os.utime(path, (old, old))

    result = read_fresh_test_result(path, started_at_ms)
    assert result is not None
    assert result.timestamp == started_at_ms + 5


def test_missing_or_malformed_result_file_is_absent(tmp_path: Path) -> None:
    path = result_file_path(tmp_path)

    assert read_fresh_test_result(path, 0) is None

    path.write_text("not json at all", "utf-8")
    assert read_fresh_test_result(path, 0) is None
