from __future__ import annotations

import allure

from testgen_agent.orchestrator.events import TestGenPhase
from testgen_agent.orchestrator.registry import TaskRegistry

pytestmark = [
    allure.epic("Pipeline Orchestration"),
    allure.feature("Task Registry"),
]


class _Handle:
    def __init__(self, task_id: str, *, fail: bool = False) -> None:
        self.task_id = task_id
        self.disposed = 0
        self.fail = fail

    def dispose(self) -> None:
        self.disposed += 1
        if self.fail:
            raise RuntimeError("already gone")


def test_register_and_unregister() -> None:
    registry = TaskRegistry()

    registry.register("t1", "label")

    assert registry.is_running()
    assert registry.running_task_ids() == ["t1"]
    assert registry.is_cancelled("t1") is False

    registry.unregister("t1")
    registry.unregister("t1")

    assert registry.running_count() == 0


def test_unknown_task_counts_as_cancelled() -> None:
    assert TaskRegistry().is_cancelled("missing") is True


def test_cancel_disposes_the_current_handle() -> None:
    registry = TaskRegistry()
    first, second = _Handle("t1"), _Handle("t1")
    registry.register("t1", "label", first)
    registry.update_running_task("t1", second)

    assert registry.cancel("t1") is True

    assert first.disposed == 0
    assert second.disposed == 1
    assert registry.is_cancelled("t1") is True
    assert registry.cancel("t1") is False


def test_cancel_tolerates_dispose_errors() -> None:
    registry = TaskRegistry()
    registry.register("t1", "label", _Handle("t1", fail=True))

    assert registry.cancel("t1") is True
    assert registry.running_count() == 0


def test_cancel_all() -> None:
    registry = TaskRegistry()
    registry.register("a", "A")
    registry.register("b", "B")

    assert registry.cancel_all() == 2
    assert not registry.is_running()


def test_listeners_see_phase_labels() -> None:
    registry = TaskRegistry()
    seen: list[tuple[bool, int, str | None]] = []

    def listener(running: bool, count: int, label: str | None) -> None:
        seen.append((running, count, label))

    registry.add_listener(listener)
    registry.register("t1", "label")
    registry.update_phase("t1", TestGenPhase.GENERATING, "Generating test code")
    registry.unregister("t1")
    registry.remove_listener(listener)
    registry.register("t2", "label")

    assert seen == [
        (True, 1, None),
        (True, 1, "Generating test code"),
        (False, 0, None),
    ]
    task = registry.get("t2")
    assert task is not None
    assert task.current_phase is None


def test_failing_listener_does_not_break_registry() -> None:
    registry = TaskRegistry()

    def broken(running: bool, count: int, label: str | None) -> None:
        raise ValueError("boom")

    registry.add_listener(broken)
    registry.register("t1", "label")

    assert registry.current_phase_label() is None
    assert registry.running_count() == 1
