"""In-process registry of running pipeline tasks and their active agent handles."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from testgen_agent.orchestrator.backend.base import RunningTask
from testgen_agent.orchestrator.events import TestGenPhase

logger = logging.getLogger(__name__)

TaskStateListener = Callable[[bool, int, str | None], None]


@dataclass(slots=True)
class ManagedTask:
    """One registered task with its current invocation handle."""

    task_id: str
    label: str
    running_task: RunningTask
    started_at: float
    cancelled: bool = False
    current_phase: TestGenPhase | None = None
    phase_label: str | None = None


class _NoopRunningTask:
    """Placeholder handle used until the first phase starts an invocation."""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id

    def dispose(self) -> None:
        return None


class TaskRegistry:
    """Tracks running tasks, cancellation flags and state listeners.

    Provider observers fire on reader threads, so every mutation is guarded by
    a lock. Listeners are invoked outside the lock with a state snapshot.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, ManagedTask] = {}
        self._listeners: list[TaskStateListener] = []
        self._lock = threading.RLock()

    def register(self, task_id: str, label: str, running_task: RunningTask | None = None) -> None:
        with self._lock:
            self._tasks[task_id] = ManagedTask(
                task_id=task_id,
                label=label,
                running_task=running_task or _NoopRunningTask(task_id),
                started_at=time.monotonic(),
            )
        logger.debug("Registered task %s (%s)", task_id, label)
        self._notify_listeners()

    def unregister(self, task_id: str) -> None:
        with self._lock:
            removed = self._tasks.pop(task_id, None)
        if removed is not None:
            logger.debug("Unregistered task %s", task_id)
        self._notify_listeners()

    def cancel(self, task_id: str) -> bool:
        """Flag the task as cancelled, dispose its handle and drop it."""

        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return False
            task.cancelled = True
            handle = task.running_task
            del self._tasks[task_id]
        try:
            handle.dispose()
        except Exception:  # noqa: BLE001
            logger.debug("Dispose failed while cancelling %s", task_id, exc_info=True)
        logger.info("Cancelled task %s", task_id)
        self._notify_listeners()
        return True

    def cancel_all(self) -> int:
        return sum(1 for task_id in self.running_task_ids() if self.cancel(task_id))

    def is_cancelled(self, task_id: str) -> bool:
        """Unknown ids count as cancelled: the task already finished or was dropped."""

        with self._lock:
            task = self._tasks.get(task_id)
            return True if task is None else task.cancelled

    def update_running_task(self, task_id: str, running_task: RunningTask) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None:
                task.running_task = running_task

    def update_phase(self, task_id: str, phase: TestGenPhase, phase_label: str) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return
            task.current_phase = phase
            task.phase_label = phase_label
        self._notify_listeners()

    def get(self, task_id: str) -> ManagedTask | None:
        with self._lock:
            return self._tasks.get(task_id)

    def current_phase_label(self) -> str | None:
        with self._lock:
            for task in self._tasks.values():
                if task.phase_label:
                    return task.phase_label
        return None

    def running_count(self) -> int:
        with self._lock:
            return len(self._tasks)

    def is_running(self) -> bool:
        return self.running_count() > 0

    def running_task_ids(self) -> list[str]:
        with self._lock:
            return list(self._tasks)

    def add_listener(self, listener: TaskStateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: TaskStateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify_listeners(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            count = len(self._tasks)
        label = self.current_phase_label()
        for listener in listeners:
            try:
                listener(count > 0, count, label)
            except Exception:  # noqa: BLE001
                logger.warning("Task state listener failed", exc_info=True)
