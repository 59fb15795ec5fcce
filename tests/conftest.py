from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

import pytest

from kanban_orchestrator.domain.models import Column, HookBinding, TaskContext
from kanban_orchestrator.engine.hooks import AgentHookResult, ScriptResult
from kanban_orchestrator.engine.scheduler import Scheduler, create_scheduler
from kanban_orchestrator.errors import ExecutorFailure
from kanban_orchestrator.events.ws import WebSocketHub

ScriptedResult = Union[ScriptResult, Callable[[TaskContext], ScriptResult]]


class RecordingExecutor:
    """Executor double that records start/stop requests."""

    def __init__(self) -> None:
        self.started: list[tuple[str, str]] = []
        self.stopped: list[str] = []
        self.fail_with: Optional[str] = None

    def start(self, task_id: str, prompt: str, images: list[dict[str, Any]], *, executor_type: str = "claude_code") -> None:
        if self.fail_with is not None:
            raise ExecutorFailure(task_id, self.fail_with)
        self.started.append((task_id, prompt))

    def stop(self, task_id: str) -> None:
        self.stopped.append(task_id)

    def prompts_for(self, task_id: str) -> list[str]:
        return [prompt for tid, prompt in self.started if tid == task_id]


class ScriptedBackend:
    """Hook backend double; unknown commands succeed."""

    def __init__(self) -> None:
        self.results: dict[str, ScriptedResult] = {}
        self.agent_results: dict[str, AgentHookResult] = {}
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def run_script(self, command: str, context: TaskContext) -> ScriptResult:
        with self._lock:
            self.calls.append((command, context.task_id))
        result = self.results.get(command, ScriptResult(exit_code=0, output=f"{command} ok"))
        if callable(result):
            return result(context)
        return result

    def run_agent_hook(self, prompt: str, executor: str, auto_approve: bool, context: TaskContext) -> AgentHookResult:
        with self._lock:
            self.calls.append((prompt, context.task_id))
        return self.agent_results.get(prompt, AgentHookResult(success=True, output="done"))

    def commands(self, task_id: Optional[str] = None) -> list[str]:
        with self._lock:
            return [command for command, tid in self.calls if task_id is None or tid == task_id]


@pytest.fixture
def executor() -> RecordingExecutor:
    return RecordingExecutor()


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def scheduler(tmp_path: Path, executor: RecordingExecutor, backend: ScriptedBackend) -> Iterator[Scheduler]:
    sched = create_scheduler(tmp_path, executor=executor, backend=backend, ws_hub=WebSocketHub())
    yield sched
    sched.shutdown()


@pytest.fixture
def make_column(scheduler: Scheduler) -> Callable[..., Column]:
    """Factory storing a column; bindings get positions 1..n in the given order."""

    def _make(
        name: str,
        *,
        hooks: tuple[HookBinding, ...] = (),
        limit: Optional[int] = None,
        starts_executor: bool = False,
        hooks_enabled: bool = True,
    ) -> Column:
        bindings = list(hooks)
        for index, binding in enumerate(bindings, start=1):
            binding.position = index
        column = Column(
            name=name,
            position=len(scheduler.list_columns()),
            hooks=bindings,
            max_concurrent_tasks=limit,
            starts_executor=starts_executor,
            hooks_enabled=hooks_enabled,
        )
        return scheduler.add_column(column)

    return _make
