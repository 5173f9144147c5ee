"""Remove stray perspective files the agent saved at the workspace root."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from testgen_agent.orchestrator.prompts import (
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
    PERSPECTIVE_MARKDOWN_BEGIN,
    PERSPECTIVE_MARKDOWN_END,
)

logger = logging.getLogger(__name__)

_CANDIDATE_PATTERNS: tuple[str, ...] = ("test_perspectives*.md", "test_perspectives*.json")
_MARKER_PAIRS: tuple[tuple[str, str], ...] = (
    (PERSPECTIVE_MARKDOWN_BEGIN, PERSPECTIVE_MARKDOWN_END),
    (PERSPECTIVE_JSON_BEGIN, PERSPECTIVE_JSON_END),
)


@dataclass(slots=True)
class CleanupResult:
    deleted: bool
    relative_path: str
    error_message: str | None = None


def cleanup_unexpected_perspective_files(workspace_root: Path) -> list[CleanupResult]:
    """Delete root-level ``test_perspectives*`` files carrying our marker pairs.

    Only the workspace root is scanned. Files without a complete marker pair
    belong to the user and are left alone.
    """

    candidates: dict[Path, None] = {}
    for pattern in _CANDIDATE_PATTERNS:
        for path in sorted(workspace_root.glob(pattern)):
            if path.is_file():
                candidates[path] = None

    results: list[CleanupResult] = []
    for path in candidates:
        relative_path = path.relative_to(workspace_root).as_posix()
        try:
            content = path.read_text("utf-8", errors="replace")
            if not _has_marker_pair(content):
                continue
            path.unlink()
        except OSError as error:
            logger.warning("Could not remove %s: %s", relative_path, error)
            results.append(CleanupResult(False, relative_path, str(error)))
            continue
        logger.info("Removed stray perspective file %s", relative_path)
        results.append(CleanupResult(True, relative_path))
    return results


def _has_marker_pair(content: str) -> bool:
    return any(begin in content and end in content for begin, end in _MARKER_PAIRS)
