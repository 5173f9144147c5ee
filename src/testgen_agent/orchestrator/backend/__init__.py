"""Agent provider implementations."""

from testgen_agent.orchestrator.backend.base import AgentProvider, AgentRunRequest, RunningTask
from testgen_agent.orchestrator.backend.cli_backend import (
    CliAgentProvider,
    CliRunningTask,
    ProviderRunError,
)

__all__ = [
    "AgentProvider",
    "AgentRunRequest",
    "CliAgentProvider",
    "CliRunningTask",
    "ProviderRunError",
    "RunningTask",
]
