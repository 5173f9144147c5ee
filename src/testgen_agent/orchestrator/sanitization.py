"""Sanitization helpers for agent log text persisted into report artifacts."""

from __future__ import annotations

import re
from collections.abc import Callable

_Replacement = str | Callable[[re.Match[str]], str]

_SYSTEM_REMINDER = re.compile(r"<system_reminder>[\s\S]*?</system_reminder>")
_NOISE_LINES = frozenset({"event:tool_call", "system:init"})

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(cursor|openai|anthropic|gemini)[a-z0-9_]*_?(api_)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
)

_ANSI_PATTERN = re.compile(
    r"[\u001B\u009B][\[\]()#;?]*(?:(?:\d{1,4}(?:;\d{0,4})*)?[\dA-ORZcf-nqry=><])",
)


def strip_ansi(text: str) -> str:
    """Remove terminal styling escape sequences."""

    return _ANSI_PATTERN.sub("", text)


def sanitize_agent_log_message(message: str) -> str:
    """Drop agent-internal noise, redact obvious secrets and collapse blank lines."""

    text = message.replace("\r\n", "\n")
    text = _SYSTEM_REMINDER.sub("", text)
    for pattern, replacement in _REPLACEMENTS:
        text = pattern.sub(replacement, text)

    collapsed: list[str] = []
    previous_blank = False
    for raw_line in text.split("\n"):
        line = raw_line.rstrip()
        if line.strip() in _NOISE_LINES:
            continue
        if not line.strip():
            if previous_blank:
                continue
            previous_blank = True
            collapsed.append("")
            continue
        previous_blank = False
        collapsed.append(line)
    return "\n".join(collapsed).strip()


def truncate_text(text: str, max_chars: int) -> str:
    """Clamp text, appending a marker that records the original length."""

    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n\n... (truncated: {len(text)} chars -> {max_chars} chars)"
