from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from loguru import logger

from ..config import EngineConfig
from ..constants import ACTIVE_AGENT_STATUSES, DEFAULT_EXECUTOR_TYPE
from ..domain.models import Column, ExecutorEvent, HookRun, MessageQueueEntry, Placement, Task, now_iso
from ..domain.position import ColumnOrdering
from ..errors import ColumnNotFound, InvalidTransition, TaskNotFound
from ..events.bus import EventBus
from ..events.ws import WebSocketHub
from ..storage.container import Container
from .executor import DeferredExecutor, Executor
from .gate import HIGH_PRIORITY, ConcurrencyGate
from .hooks import HookBackend, HookPipelineRunner, PipelineOutcome, SubprocessHookBackend
from .lifecycle import TaskLifecycle


class Scheduler:
    """Entry point for every task operation.

    Each public call takes the task's lock, reads fresh task and column
    snapshots, and drives the gate, hook pipeline and lifecycle to a decision
    before returning. Hook pipelines and the continuation of tasks admitted
    from a wait list run on a worker pool; executor work is only requested,
    and its progress comes back through `report_executor_event`.
    """

    def __init__(
        self,
        container: Container,
        bus: EventBus,
        *,
        executor: Optional[Executor] = None,
        backend: Optional[HookBackend] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.container = container
        self.bus = bus
        self.config = config or container.engine_config()
        self.executor: Executor = executor or DeferredExecutor()
        self.backend: HookBackend = backend or SubprocessHookBackend(timeout_seconds=self.config.script_timeout_seconds)

        self._task_locks: dict[str, threading.RLock] = {}
        self._column_locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()
        self._futures: set[Future] = set()
        self._futures_lock = threading.Lock()

        self.gate = ConcurrencyGate(self._column_limit)
        self.runner = HookPipelineRunner(
            hook_runs=container.hook_runs,
            tasks=container.tasks,
            columns=container.columns,
            bus=bus,
            backend=self.backend,
            lock_for=self.lock_for,
            submit=self._submit,
            on_drained=self._on_pipeline_drained,
            max_error_output=self.config.max_error_output,
        )
        self.lifecycle = TaskLifecycle(
            tasks=container.tasks,
            columns=container.columns,
            gate=self.gate,
            runner=self.runner,
            executor=self.executor,
            bus=bus,
            schedule_admitted=self._schedule_admitted,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _column_limit(self, column_id: str) -> Optional[int]:
        column = self.container.columns.get(column_id)
        return column.max_concurrent_tasks if column else None

    def lock_for(self, task_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._task_locks.get(task_id)
            if lock is None:
                lock = threading.RLock()
                self._task_locks[task_id] = lock
            return lock

    @contextmanager
    def _column_lock(self, column_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._column_locks.get(column_id)
            if lock is None:
                lock = threading.Lock()
                self._column_locks[column_id] = lock
        with lock:
            yield

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.config.pipeline_workers, thread_name_prefix="kanban-pipeline"
                )
            return self._pool

    def _submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._get_pool().submit(fn, *args)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget_future)
        return future

    def _forget_future(self, future: Future) -> None:
        with self._futures_lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Background scheduler work raised: {}", exc)

    def wait_for_idle(self, timeout: float = 30.0) -> bool:
        """Block until no pipeline or admission work is in flight.

        Work can schedule more work, so this keeps waiting until a pass finds
        nothing pending. Returns False if `timeout` elapses first.
        """
        deadline = time.monotonic() + max(timeout, 0.0)
        while True:
            with self._futures_lock:
                inflight = list(self._futures)
            if not inflight:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait(inflight, timeout=min(remaining, 0.5))

    def shutdown(self, *, timeout: float = 10.0) -> None:
        self.wait_for_idle(timeout)
        with self._pool_lock:
            pool = self._pool
            self._pool = None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=False)

    def _on_pipeline_drained(self, task_id: str, pipeline_id: str, outcome: PipelineOutcome) -> None:
        self.lifecycle.finish_pipeline(task_id, pipeline_id, outcome)

    def _schedule_admitted(self, column_id: str, task_id: str) -> None:
        self._submit(self._resume_admitted, column_id, task_id)

    def _resume_admitted(self, column_id: str, task_id: str) -> None:
        with self.lock_for(task_id):
            self.lifecycle.resume_admitted(task_id, column_id)

    def _require_task(self, task_id: str) -> Task:
        task = self.container.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _require_column(self, column_id: str) -> Column:
        column = self.container.columns.get(column_id)
        if column is None:
            raise ColumnNotFound(column_id)
        return column

    def _entry_column(self) -> Column:
        if self.config.entry_column_id:
            return self._require_column(self.config.entry_column_id)
        columns = self.container.columns.list()
        if not columns:
            raise ColumnNotFound("<entry>")
        return columns[0]

    def _place(self, task: Task, column_id: str, placement: Placement) -> Task:
        """Assign `task` a key in `column_id` and persist it with any re-spaced siblings."""
        with self._column_lock(column_id):
            siblings = self.container.tasks.in_column(column_id)
            ordering = ColumnOrdering(
                [(other.id, other.position) for other in siblings],
                gap=self.config.position_gap,
                initial=self.config.position_initial,
                scale=self.config.position_scale,
            )
            result = ordering.place(task.id, placement)
            task.column_id = column_id
            task.position = str(result.key)
            if result.rebalanced:
                moved = []
                for other in siblings:
                    key = result.rebalanced.get(other.id)
                    if key is not None and other.id != task.id:
                        other.position = str(key)
                        moved.append(other)
                moved.append(task)
                self.container.tasks.place_many(moved)
                logger.debug("Rebalanced {} position keys in column {}", len(moved), column_id)
                self.bus.emit(
                    channel="tasks",
                    event_type="column.rebalanced",
                    entity_id=column_id,
                    payload={"positions": {item.id: item.position for item in moved}},
                )
            else:
                self.container.tasks.place_many([task])
        self.bus.emit(
            channel="tasks",
            event_type="task.position_changed",
            entity_id=task.id,
            payload={"column_id": column_id, "position": task.position},
        )
        return task

    # ------------------------------------------------------------------
    # Task operations
    # ------------------------------------------------------------------

    def create_task(
        self,
        title: str,
        *,
        column_id: Optional[str] = None,
        description: str = "",
        placement: Optional[Placement] = None,
        parent_task_id: Optional[str] = None,
        worktree_path: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Task:
        if not title.strip():
            raise ValueError("Task title must not be empty")
        column = self._require_column(column_id) if column_id else self._entry_column()
        if parent_task_id:
            parent = self._require_task(parent_task_id)
            if not parent.is_parent:
                with self.lock_for(parent.id):
                    parent = self._require_task(parent_task_id)
                    parent.is_parent = True
                    self.container.tasks.upsert(parent)
        task = Task(
            title=title.strip(),
            description=description,
            column_id=column.id,
            parent_task_id=parent_task_id,
            worktree_path=worktree_path,
            metadata=dict(metadata or {}),
        )
        with self.lock_for(task.id):
            self._place(task, column.id, placement or Placement.end())
            self.bus.emit(
                channel="tasks",
                event_type="task.created",
                entity_id=task.id,
                payload={"title": task.title, "column_id": column.id, "position": task.position},
            )
            logger.info("Created task {} in column {}", task.id, column.id)
            return self.lifecycle.enter_column(task, column)

    def move_task(self, task_id: str, column_id: str, placement: Optional[Placement] = None) -> Task:
        """Move a task to `column_id` at `placement` (appended when omitted).

        Moving within the same column only changes the position. Moving across
        columns leaves the old column (cancelling its hooks, stopping the
        executor and freeing its slot) and then enters the new one.
        """
        column = self._require_column(column_id)
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            placement = placement or Placement.end()
            if task.column_id == column.id:
                return self._place(task, column.id, placement)
            previous = task.column_id
            self.lifecycle.halt(task, "column_change")
            self._place(task, column.id, placement)
            logger.info("Moved task {} from column {} to {}", task_id, previous, column.id)
            return self.lifecycle.enter_column(task, column)

    def report_executor_event(self, task_id: str, event: Union[ExecutorEvent, dict[str, Any]]) -> Task:
        if isinstance(event, dict):
            event = ExecutorEvent.from_dict(event)
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            try:
                return self.lifecycle.on_executor_event(task, event)
            except InvalidTransition as exc:
                logger.warning("{}", exc)
                return self._require_task(task_id)

    def stop_task(self, task_id: str) -> Task:
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            logger.info("Stopping task {}", task_id)
            return self.lifecycle.halt(task, "user_cancelled")

    def clear_error(self, task_id: str) -> Task:
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            try:
                return self.lifecycle.clear_error(task)
            except InvalidTransition as exc:
                logger.warning("{}", exc)
                return task

    def send_message(
        self,
        task_id: str,
        prompt: str,
        *,
        images: Optional[list[dict[str, Any]]] = None,
        executor_type: str = DEFAULT_EXECUTOR_TYPE,
    ) -> Task:
        """Send a user prompt to the task's executor, or queue it.

        Raises:
            ValueError: if the prompt is empty.
            InvalidTransition: if the task is in error.
        """
        entry = MessageQueueEntry(prompt=prompt.strip(), images=list(images or []), executor_type=executor_type)
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            return self.lifecycle.submit_message(task, entry)

    def delete_task(self, task_id: str) -> bool:
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            self.lifecycle.halt(task, "user_cancelled")
            self.container.hook_runs.delete_for_task(task_id)
            deleted = self.container.tasks.delete(task_id)
            self.bus.emit(
                channel="tasks",
                event_type="task.deleted",
                entity_id=task_id,
                payload={"column_id": task.column_id},
            )
            logger.info("Deleted task {}", task_id)
        with self._locks_guard:
            self._task_locks.pop(task_id, None)
        return deleted

    def prioritize(self, task_id: str) -> Task:
        """Move a task waiting for admission to the head of its column's line."""
        with self.lock_for(task_id):
            task = self._require_task(task_id)
            if self.gate.prioritize(task.column_id, task.id):
                task.queue_priority = HIGH_PRIORITY
                self.container.tasks.upsert(task)
                logger.info("Prioritized task {} in column {}", task_id, task.column_id)
            return task

    # ------------------------------------------------------------------
    # Columns and queries
    # ------------------------------------------------------------------

    def update_column(
        self,
        column_id: str,
        *,
        max_concurrent_tasks: Any = ...,
        hooks_enabled: Optional[bool] = None,
        starts_executor: Optional[bool] = None,
        name: Optional[str] = None,
    ) -> Column:
        """Change column settings and admit waiters a raised limit now allows.

        Pass `max_concurrent_tasks=None` to lift the limit entirely.
        """
        column = self._require_column(column_id)
        if max_concurrent_tasks is not ...:
            limit = max_concurrent_tasks
            column.max_concurrent_tasks = int(limit) if limit is not None and int(limit) >= 1 else None
        if hooks_enabled is not None:
            column.hooks_enabled = hooks_enabled
        if starts_executor is not None:
            column.starts_executor = starts_executor
        if name is not None:
            column.name = name
        self.container.columns.upsert(column)
        for admitted in self.gate.update_limit(column.id):
            self._schedule_admitted(column.id, admitted)
        return column

    def add_column(self, column: Column) -> Column:
        self.container.columns.upsert(column)
        return column

    def get_task(self, task_id: str) -> Task:
        return self._require_task(task_id)

    def list_tasks(self, column_id: Optional[str] = None) -> list[Task]:
        if column_id:
            self._require_column(column_id)
            return self.container.tasks.in_column(column_id)
        return self.container.tasks.list()

    def list_columns(self) -> list[Column]:
        return self.container.columns.list()

    def hook_runs_for(self, task_id: str) -> list[HookRun]:
        self._require_task(task_id)
        return self.runner.history(task_id)

    def column_status(self, column_id: str) -> dict[str, Any]:
        self._require_column(column_id)
        return self.gate.status(column_id)

    # ------------------------------------------------------------------
    # Restart recovery
    # ------------------------------------------------------------------

    def restore_gate(self) -> None:
        """Rebuild every column's slots and wait list from the stored tasks."""
        by_column: dict[str, list[Task]] = {}
        for task in self.container.tasks.list():
            by_column.setdefault(task.column_id, []).append(task)
        for column in self.container.columns.list():
            members = by_column.get(column.id, [])
            running = [task.id for task in members if task.in_progress]
            waiting = [
                (task.id, task.queued_at or now_iso(), task.queue_priority)
                for task in members
                if task.agent_status == "queued" and task.pending_admission
            ]
            self.gate.restore(column.id, running, waiting)
            for admitted in self.gate.update_limit(column.id):
                self._schedule_admitted(column.id, admitted)

    def recover(self) -> dict[str, int]:
        """Rebuild in-memory state from storage after a process restart."""
        interrupted = self.runner.reconcile_restart()
        tasks = self.container.tasks.list()
        reset = 0
        for task in tasks:
            if task.agent_status in ACTIVE_AGENT_STATUSES:
                with self.lock_for(task.id):
                    task.in_progress = False
                    self.lifecycle.transition(task, "idle", message="Recovered after restart")
                reset += 1

        self.restore_gate()

        resumed = 0
        for task in self.container.tasks.list():
            if not task.active_pipeline_id:
                continue
            with self.lock_for(task.id):
                queue = self.runner.queue_for(task.id, task.active_pipeline_id)
                if queue.has_pending():
                    self.runner.dispatch(task.id, task.active_pipeline_id)
                else:
                    self.lifecycle.finish_pipeline(task.id, task.active_pipeline_id, queue.outcome())
            resumed += 1

        summary = {"interrupted_hooks": len(interrupted), "reset_tasks": reset, "resumed_pipelines": resumed}
        self.bus.emit(channel="system", event_type="scheduler.recovered", entity_id=self.container.project_id, payload=summary)
        logger.info("Scheduler recovered: {}", summary)
        return summary


def create_scheduler(
    project_dir: Union[str, Path],
    *,
    executor: Optional[Executor] = None,
    backend: Optional[HookBackend] = None,
    ws_hub: Optional[WebSocketHub] = None,
) -> Scheduler:
    container = Container(Path(project_dir))
    bus = EventBus(container.events, container.project_id, ws_hub=ws_hub)
    return Scheduler(container, bus, executor=executor, backend=backend)
