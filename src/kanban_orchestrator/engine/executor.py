"""Boundary with the agent executor (the subprocess/LLM driver).

The engine only ever asks an executor to start or stop work for a task; the
executor reports back later through `Scheduler.report_executor_event`.
`Executor.start` must return promptly and raise `ExecutorFailure` when the
request cannot be accepted.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Literal, Optional, Protocol

from loguru import logger

from ..constants import DEFAULT_EXECUTOR_TYPE
from ..domain.models import now_iso


class Executor(Protocol):
    def start(
        self,
        task_id: str,
        prompt: str,
        images: list[dict[str, Any]],
        *,
        executor_type: str = DEFAULT_EXECUTOR_TYPE,
    ) -> None:
        ...

    def stop(self, task_id: str) -> None:
        ...


@dataclass
class ExecutorRequest:
    action: Literal["start", "stop"]
    task_id: str
    prompt: Optional[str] = None
    images: list[dict[str, Any]] = field(default_factory=list)
    executor_type: str = DEFAULT_EXECUTOR_TYPE
    requested_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "task_id": self.task_id,
            "prompt": self.prompt,
            "images": list(self.images),
            "executor_type": self.executor_type,
            "requested_at": self.requested_at,
        }


class DeferredExecutor:
    """Executor that queues requests for an out-of-process driver to fulfil.

    The driver drains pending requests (directly or over HTTP) and reports
    progress through executor events.
    """

    def __init__(self, on_request: Optional[Callable[[ExecutorRequest], None]] = None) -> None:
        self._pending: list[ExecutorRequest] = []
        self._lock = threading.Lock()
        self._on_request = on_request

    def _push(self, request: ExecutorRequest) -> None:
        with self._lock:
            self._pending.append(request)
        if self._on_request is not None:
            self._on_request(request)

    def start(
        self,
        task_id: str,
        prompt: str,
        images: list[dict[str, Any]],
        *,
        executor_type: str = DEFAULT_EXECUTOR_TYPE,
    ) -> None:
        logger.info("Executor start requested for task {} ({})", task_id, executor_type)
        self._push(ExecutorRequest(action="start", task_id=task_id, prompt=prompt, images=list(images), executor_type=executor_type))

    def stop(self, task_id: str) -> None:
        logger.info("Executor stop requested for task {}", task_id)
        self._push(ExecutorRequest(action="stop", task_id=task_id))

    def drain(self) -> list[ExecutorRequest]:
        with self._lock:
            drained, self._pending = self._pending, []
        return drained
