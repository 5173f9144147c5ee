"""Local stream-JSON demo agent for provider integration tests."""

from __future__ import annotations

import argparse
import json
import sys

from testgen_agent.orchestrator.prompts import (
    EXECUTION_JSON_BEGIN,
    EXECUTION_JSON_END,
    PERSPECTIVE_JSON_BEGIN,
    PERSPECTIVE_JSON_END,
)


def main(argv: list[str] | None = None) -> int:
    """Answer the prompt deterministically in the stream-JSON dialect."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="print_mode", action="store_true")
    parser.add_argument("--output-format", default="stream-json")
    parser.add_argument("--model", default="echo")
    parser.add_argument("--force", action="store_true")
    parser.add_argument("prompt")
    args = parser.parse_args(argv)

    _emit({"type": "system", "subtype": "init", "model": args.model})
    _emit({"type": "user", "message": {"content": [{"type": "text", "text": args.prompt}]}})
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": _reply(args)}]}})
    _emit({"type": "result", "subtype": "success", "duration_ms": 1})
    return 0


def _reply(args: argparse.Namespace) -> str:
    if PERSPECTIVE_JSON_BEGIN in args.prompt:
        payload = {
            "version": 1,
            "cases": [
                {
                    "caseId": "TC-N-01",
                    "inputPrecondition": "valid input",
                    "perspective": "Equivalence - normal",
                    "expectedResult": "succeeds",
                    "notes": "echo",
                },
            ],
        }
        return f"{PERSPECTIVE_JSON_BEGIN}\n{json.dumps(payload)}\n{PERSPECTIVE_JSON_END}"
    if EXECUTION_JSON_BEGIN in args.prompt:
        payload = {
            "version": 1,
            "exitCode": 0,
            "signal": None,
            "durationMs": 5,
            "stdout": "  echo suite\n    ✔ echo passes\n",
            "stderr": "",
        }
        return f"{EXECUTION_JSON_BEGIN}\n{json.dumps(payload)}\n{EXECUTION_JSON_END}"
    mode = "write" if args.force else "read-only"
    return f"echo ({mode}): {args.prompt.strip()[:200]}"


def _emit(record: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(record, ensure_ascii=False) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
