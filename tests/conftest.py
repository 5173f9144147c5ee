"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass, field, replace

import pytest

from testgen_agent.config import Settings
from testgen_agent.orchestrator.backend.base import AgentRunRequest
from testgen_agent.orchestrator.events import (
    EventObserver,
    completed_event,
    log_event,
    started_event,
)

ECHO_AGENT_COMMAND = f"{sys.executable} -m testgen_agent.orchestrator.backend.echo_agent"


@dataclass(slots=True)
class ScriptedReply:
    """One canned agent invocation: log messages, then an optional completion."""

    messages: list[str] = field(default_factory=list)
    exit_code: int | None = 0
    complete: bool = True
    on_run: Callable[[AgentRunRequest], None] | None = None


class ScriptedTask:
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        self.dispose_calls = 0

    def dispose(self) -> None:
        self.dispose_calls += 1


class ScriptedProvider:
    """In-memory provider double replaying ``ScriptedReply`` objects in order."""

    def __init__(self, replies: list[ScriptedReply] | None = None) -> None:
        self.replies = list(replies or [])
        self.requests: list[AgentRunRequest] = []
        self.tasks: list[ScriptedTask] = []
        self.observers: list[EventObserver] = []

    def run(self, request: AgentRunRequest, observer: EventObserver) -> ScriptedTask:
        self.requests.append(request)
        self.observers.append(observer)
        reply = self.replies.pop(0) if self.replies else ScriptedReply()
        if reply.on_run is not None:
            reply.on_run(request)
        task = ScriptedTask(request.task_id)
        self.tasks.append(task)
        observer(started_event(request.task_id, "scripted"))
        for message in reply.messages:
            observer(log_event(request.task_id, "info", message))
        if reply.complete:
            observer(completed_event(request.task_id, reply.exit_code))
        return task


@pytest.fixture()
def scripted_provider() -> Callable[..., ScriptedProvider]:
    def _build(*replies: ScriptedReply) -> ScriptedProvider:
        return ScriptedProvider(list(replies))

    return _build


@pytest.fixture()
def echo_agent(monkeypatch):
    """Monkeypatch Settings.from_env to drive the bundled echo agent."""
    original_from_env = Settings.from_env

    def _patched_from_env():
        settings = original_from_env()
        new_agent = replace(settings.agent, agent_command=ECHO_AGENT_COMMAND)
        return replace(settings, agent=new_agent)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))


@pytest.fixture(autouse=True)
def _clean_testgen_env(monkeypatch):
    for name in (
        "TESTGEN_AGENT_COMMAND",
        "TESTGEN_AGENT_MODEL",
        "TESTGEN_AGENT_INCLUDE_PERSPECTIVE_TABLE",
        "TESTGEN_AGENT_PERSPECTIVE_REPORT_DIR",
        "TESTGEN_AGENT_TEST_EXECUTION_REPORT_DIR",
        "TESTGEN_AGENT_TEST_COMMAND",
        "TESTGEN_AGENT_TEST_EXECUTION_RUNNER",
        "TESTGEN_AGENT_FORCE_FOR_TEST_EXECUTION",
        "TESTGEN_AGENT_PERSPECTIVE_TIMEOUT_MS",
    ):
        monkeypatch.delenv(name, raising=False)
