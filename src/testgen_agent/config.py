"""Runtime configuration for the test-generation pipeline."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from testgen_agent.orchestrator.models import ExecutionRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI invocation settings."""

    agent_command: str = "cursor-agent"
    model: str = ""


@dataclass(slots=True)
class ArtifactSettings:
    """Report artifact and test execution settings."""

    include_perspective_table: bool = True
    perspective_report_dir: str = "docs/test-perspectives"
    test_execution_report_dir: str = "docs/test-execution-reports"
    test_command: str = "npm test"
    test_execution_runner: ExecutionRunner = ExecutionRunner.AGENT
    agent_force_for_test_execution: bool = False
    perspective_timeout_ms: int = 0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    agent: AgentSettings = field(default_factory=AgentSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from ``TESTGEN_AGENT_*`` environment variables."""

        return cls(
            agent=AgentSettings(
                agent_command=os.getenv("TESTGEN_AGENT_COMMAND", "cursor-agent").strip()
                or "cursor-agent",
                model=os.getenv("TESTGEN_AGENT_MODEL", "").strip(),
            ),
            artifacts=ArtifactSettings(
                include_perspective_table=_env_bool(
                    "TESTGEN_AGENT_INCLUDE_PERSPECTIVE_TABLE",
                    True,
                ),
                perspective_report_dir=os.getenv(
                    "TESTGEN_AGENT_PERSPECTIVE_REPORT_DIR",
                    "docs/test-perspectives",
                ).strip(),
                test_execution_report_dir=os.getenv(
                    "TESTGEN_AGENT_TEST_EXECUTION_REPORT_DIR",
                    "docs/test-execution-reports",
                ).strip(),
                test_command=os.getenv("TESTGEN_AGENT_TEST_COMMAND", "npm test").strip(),
                test_execution_runner=parse_runner(
                    os.getenv("TESTGEN_AGENT_TEST_EXECUTION_RUNNER", "agent"),
                ),
                agent_force_for_test_execution=_env_bool(
                    "TESTGEN_AGENT_FORCE_FOR_TEST_EXECUTION",
                    False,
                ),
                perspective_timeout_ms=int(
                    os.getenv("TESTGEN_AGENT_PERSPECTIVE_TIMEOUT_MS", "0"),
                ),
            ),
        )

    def validate(self) -> None:
        if self.artifacts.perspective_timeout_ms < 0:
            raise ValueError("TESTGEN_AGENT_PERSPECTIVE_TIMEOUT_MS must be >= 0.")


def parse_runner(value: str | None) -> ExecutionRunner:
    """Map a runner name to the enum; unknown values fall back to the agent runner."""

    normalized = (value or "").strip().lower()
    if normalized == ExecutionRunner.LOCAL.value:
        return ExecutionRunner.LOCAL
    if normalized and normalized != ExecutionRunner.AGENT.value:
        logger.warning("Unknown test execution runner %r, using agent", value)
    return ExecutionRunner.AGENT


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
