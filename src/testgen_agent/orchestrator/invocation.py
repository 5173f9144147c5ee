"""Run one provider invocation to completion with an optional bounded wait."""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable

from testgen_agent.orchestrator.backend.base import AgentProvider, AgentRunRequest, RunningTask
from testgen_agent.orchestrator.backend.cli_backend import ProviderRunError
from testgen_agent.orchestrator.events import (
    CompletedEvent,
    EventObserver,
    TestGenEvent,
    completed_event,
    log_event,
)

logger = logging.getLogger(__name__)

# Largest single-shot wait we arm. Anything above it is treated as "no timeout"
# instead of being clamped into a timer that fires early.
MAX_TIMEOUT_MS = min(2**31 - 1, int(threading.TIMEOUT_MAX * 1000))


class _Completion:
    """Exactly-once resolution shared by the reader thread and the waiter."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self.exit_code: int | None = None

    def resolve(self, exit_code: int | None) -> bool:
        with self._lock:
            if self._done.is_set():
                return False
            self.exit_code = exit_code
            self._done.set()
            return True

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


def effective_timeout_ms(timeout_ms: float | None) -> float | None:
    """Normalize a configured timeout; None means wait indefinitely."""

    if timeout_ms is None or not math.isfinite(timeout_ms):
        return None
    if timeout_ms <= 0 or timeout_ms > MAX_TIMEOUT_MS:
        return None
    return timeout_ms


def run_provider_to_completion(
    provider: AgentProvider,
    request: AgentRunRequest,
    *,
    observer: EventObserver,
    timeout_ms: float | None = None,
    on_running_task: Callable[[RunningTask], None] | None = None,
) -> int | None:
    """Start ``request`` and block until it completes or the timeout fires.

    Every provider event is forwarded to ``observer``. Returns the exit code
    from the first ``CompletedEvent``, or None when the wait timed out or the
    agent could not be started. The result is decided exactly once; events
    arriving after that are still forwarded.
    """

    completion = _Completion()

    def forward(event: TestGenEvent) -> None:
        try:
            observer(event)
        finally:
            if isinstance(event, CompletedEvent):
                completion.resolve(event.exit_code)

    try:
        running = provider.run(request, forward)
    except ProviderRunError as error:
        logger.warning("Agent start failed for %s: %s", request.task_id, error)
        observer(log_event(request.task_id, "error", f"Agent failed to start: {error}"))
        observer(completed_event(request.task_id, None))
        return None

    if on_running_task is not None:
        on_running_task(running)

    timeout = effective_timeout_ms(timeout_ms)
    if timeout is None:
        completion.wait()
        return completion.exit_code

    if completion.wait(timeout / 1000):
        return completion.exit_code
    if not completion.resolve(None):
        return completion.exit_code

    logger.warning("Agent invocation %s timed out after %sms", request.task_id, timeout_ms)
    observer(
        log_event(
            request.task_id,
            "error",
            f"Timeout: agent did not finish within {timeout_ms}ms and was stopped "
            "(adjust TESTGEN_AGENT_PERSPECTIVE_TIMEOUT_MS).",
        ),
    )
    try:
        running.dispose()
    except Exception:  # noqa: BLE001
        logger.debug("Dispose failed after timeout for %s", request.task_id, exc_info=True)
    return None
