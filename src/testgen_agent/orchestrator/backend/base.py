"""Provider interface for agent invocations."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Protocol

from testgen_agent.orchestrator.events import EventObserver

OutputFormat = Literal["stream-json"]


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to start one agent invocation."""

    task_id: str
    workspace_root: Path
    agent_command: str
    prompt: str
    model: str | None = None
    output_format: OutputFormat = "stream-json"
    allow_write: bool = False


class RunningTask(Protocol):
    """Handle to one in-flight invocation."""

    task_id: str

    def dispose(self) -> None:
        """Terminate the invocation early. Best effort; must not raise."""


class AgentProvider(Protocol):
    """Protocol implemented by agent adapters."""

    def run(self, request: AgentRunRequest, observer: EventObserver) -> RunningTask:
        """Start the invocation and stream its events to ``observer``.

        The final event is always a ``CompletedEvent``.
        """
