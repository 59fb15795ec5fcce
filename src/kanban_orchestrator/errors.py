"""Exception taxonomy for the orchestration engine.

Only precondition errors (`TaskNotFound`, `ColumnNotFound`) and rejected user
input escape the Scheduler. Hook and executor failures are recorded as task
state instead of being raised to callers.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for engine errors."""


class TaskNotFound(EngineError, LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ColumnNotFound(EngineError, LookupError):
    def __init__(self, column_id: str) -> None:
        super().__init__(f"Column not found: {column_id}")
        self.column_id = column_id


class InvalidTransition(EngineError):
    """A lifecycle transition that is not legal from the task's current status."""

    def __init__(self, task_id: str, current_status: str, attempted: str) -> None:
        super().__init__(f"Task {task_id} cannot go {current_status} -> {attempted}")
        self.task_id = task_id
        self.current_status = current_status
        self.attempted = attempted


class PositionPrecisionExhausted(EngineError):
    """No key fits strictly between two neighbours at the configured scale."""


class HookExecutionFailed(EngineError):
    def __init__(self, hook_name: str, message: str, *, transparent: bool = False) -> None:
        super().__init__(message)
        self.hook_name = hook_name
        self.transparent = transparent


class ExecutorFailure(EngineError):
    def __init__(self, task_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or "Executor failed")
        self.task_id = task_id
