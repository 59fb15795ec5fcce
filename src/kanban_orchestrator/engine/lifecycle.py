"""Agent status state machine for a single task.

Callers (the Scheduler) hold the task's lock around every method here. The
lifecycle decides admission, starts the entry pipeline, starts or stops the
executor and releases the column slot once the task is done with it.

Legal status changes:

    idle             -> queued, thinking, executing, error
    queued           -> idle, thinking, executing, error
    thinking         -> executing, waiting_for_user, idle, error
    executing        -> thinking, waiting_for_user, idle, error
    waiting_for_user -> thinking, executing, idle, error
    error            -> idle (clear_error only)
"""

from __future__ import annotations

from typing import Any, Callable, Optional

from loguru import logger

from ..constants import ACTIVE_AGENT_STATUSES, DEFAULT_EXECUTOR_TYPE
from ..domain.models import AdmissionKind, AgentStatus, Column, ExecutorEvent, MessageQueueEntry, SkipReason, Task, now_iso
from ..errors import ExecutorFailure, InvalidTransition
from ..events.bus import EventBus
from ..storage.interfaces import ColumnRepository, TaskRepository
from .executor import Executor
from .gate import ConcurrencyGate
from .hooks import HookPipelineRunner, PipelineOutcome

TRANSITIONS: dict[str, set[str]] = {
    "idle": {"queued", "thinking", "executing", "error"},
    "queued": {"idle", "thinking", "executing", "error"},
    "thinking": {"executing", "waiting_for_user", "idle", "error"},
    "executing": {"thinking", "waiting_for_user", "idle", "error"},
    "waiting_for_user": {"thinking", "executing", "idle", "error"},
    "error": set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    if target == "error":
        return True
    return target in TRANSITIONS.get(current, set())


def initial_prompt(task: Task) -> str:
    parts = [task.title.strip(), task.description.strip()]
    return "\n\n".join(part for part in parts if part)


class TaskLifecycle:
    def __init__(
        self,
        *,
        tasks: TaskRepository,
        columns: ColumnRepository,
        gate: ConcurrencyGate,
        runner: HookPipelineRunner,
        executor: Executor,
        bus: EventBus,
        schedule_admitted: Callable[[str, str], None],
    ) -> None:
        self._tasks = tasks
        self._columns = columns
        self._gate = gate
        self._runner = runner
        self._executor = executor
        self._bus = bus
        self._schedule_admitted = schedule_admitted

    # ------------------------------------------------------------------
    # Status changes
    # ------------------------------------------------------------------

    def transition(self, task: Task, target: AgentStatus, *, message: Optional[str] = None) -> Task:
        """Move `task` to `target`, persist it and emit `task.status_changed`.

        A transition to the current status only refreshes the status message.

        Raises:
            InvalidTransition: if `target` is not reachable from the current status.
        """
        current = task.agent_status
        if not can_transition(current, target):
            raise InvalidTransition(task.id, current, target)
        task.agent_status = target
        task.agent_status_message = message
        self._tasks.upsert(task)
        if current != target:
            self._bus.emit(
                channel="tasks",
                event_type="task.status_changed",
                entity_id=task.id,
                payload={
                    "from": current,
                    "to": target,
                    "message": message,
                    "error_message": task.error_message,
                    "column_id": task.column_id,
                },
            )
        return task

    def fail(self, task: Task, message: str) -> Task:
        """Put the task in error and give up its slot or place in line."""
        logger.error("Task {} failed: {}", task.id, message)
        task.error_message = message
        task.in_progress = False
        task.queued_at = None
        task.pending_admission = None
        self.transition(task, "error", message=message)
        self._withdraw(task.column_id, task.id)
        return task

    def clear_error(self, task: Task) -> Task:
        if task.agent_status != "error":
            raise InvalidTransition(task.id, task.agent_status, "idle")
        task.agent_status = "idle"
        task.agent_status_message = None
        task.error_message = None
        self._tasks.upsert(task)
        self._bus.emit(
            channel="tasks",
            event_type="task.status_changed",
            entity_id=task.id,
            payload={"from": "error", "to": "idle", "message": None, "error_message": None, "column_id": task.column_id},
        )
        logger.info("Cleared error on task {}", task.id)
        return task

    # ------------------------------------------------------------------
    # Gate bookkeeping
    # ------------------------------------------------------------------

    def _handoff(self, column_id: str, admitted: list[str]) -> None:
        for task_id in admitted:
            self._schedule_admitted(column_id, task_id)

    def _release(self, column_id: str, task_id: str) -> None:
        self._handoff(column_id, self._gate.release(column_id, task_id))

    def _withdraw(self, column_id: str, task_id: str) -> None:
        self._handoff(column_id, self._gate.withdraw(column_id, task_id))

    def _give_up_slot(self, task: Task) -> None:
        task.in_progress = False
        self._tasks.upsert(task)
        self._release(task.column_id, task.id)

    # ------------------------------------------------------------------
    # Executor
    # ------------------------------------------------------------------

    def _start_executor(
        self,
        task: Task,
        prompt: str,
        *,
        images: Optional[list[dict[str, Any]]] = None,
        executor_type: str = DEFAULT_EXECUTOR_TYPE,
        status: AgentStatus = "executing",
    ) -> Task:
        self.transition(task, status, message=None)
        self._bus.emit(
            channel="queue",
            event_type="executor.start_requested",
            entity_id=task.id,
            payload={"prompt": prompt, "images": list(images or []), "executor_type": executor_type},
        )
        try:
            self._executor.start(task.id, prompt, list(images or []), executor_type=executor_type)
        except ExecutorFailure as exc:
            return self.fail(task, str(exc))
        except Exception as exc:
            logger.exception("Executor start raised for task {}", task.id)
            return self.fail(task, f"Executor failed to start: {exc}")
        logger.info("Started executor for task {} ({})", task.id, status)
        return task

    def _stop_executor(self, task: Task) -> None:
        self._bus.emit(channel="queue", event_type="executor.stop_requested", entity_id=task.id, payload={})
        try:
            self._executor.stop(task.id)
        except Exception:
            logger.exception("Executor stop raised for task {}", task.id)

    def dispatch_next_message(self, task: Task) -> Task:
        entry = task.message_queue.pop(0)
        logger.info("Dispatching message {} to task {}", entry.id, task.id)
        return self._start_executor(
            task,
            entry.prompt,
            images=entry.images,
            executor_type=entry.executor_type,
            status="thinking",
        )

    # ------------------------------------------------------------------
    # Column entry and exit
    # ------------------------------------------------------------------

    def enter_column(self, task: Task, column: Column) -> Task:
        """Request admission into `column` and run its entry hooks when admitted.

        A task already in error does not take a slot; only the column's
        transparent hooks run for it.
        """
        if task.agent_status == "error":
            return self._begin_pipeline(task, column)
        queued_at = now_iso()
        if self._gate.try_admit_or_enqueue(column.id, task.id, queued_at=queued_at, priority=task.queue_priority):
            task.in_progress = True
            task.queued_at = None
            task.pending_admission = None
            logger.info("Task {} admitted into column {}", task.id, column.id)
            return self._begin_pipeline(task, column)
        return self._wait_for_slot(task, column, "entry", queued_at)

    def _wait_for_slot(self, task: Task, column: Column, kind: AdmissionKind, queued_at: str) -> Task:
        # The gate already holds the task on its wait list. A slot handed over
        # meanwhile is resumed under the task lock, after this state is saved.
        task.in_progress = False
        task.queued_at = queued_at
        task.pending_admission = kind
        self.transition(task, "queued", message=f"Waiting for a slot in {column.name or column.id}")
        logger.info("Task {} denied admission to column {}", task.id, column.id)
        return task

    def _begin_pipeline(self, task: Task, column: Column) -> Task:
        pipeline_id, queue = self._runner.start(task, column)
        task.active_pipeline_id = pipeline_id
        self._tasks.upsert(task)
        if queue.has_pending():
            self._runner.dispatch(task.id, pipeline_id)
            return task
        return self._after_pipeline(task, column, queue.outcome())

    def finish_pipeline(self, task_id: str, pipeline_id: str, outcome: PipelineOutcome) -> None:
        task = self._tasks.get(task_id)
        if task is None or task.active_pipeline_id != pipeline_id:
            return
        column = self._columns.get(task.column_id)
        if column is None:
            logger.warning("Task {} finished hooks for a deleted column {}", task_id, task.column_id)
            task.active_pipeline_id = None
            self._give_up_slot(task)
            return
        self._after_pipeline(task, column, outcome)

    def _after_pipeline(self, task: Task, column: Column, outcome: PipelineOutcome) -> Task:
        task.active_pipeline_id = None
        if task.agent_status == "error":
            self._give_up_slot(task)
            return task
        failure = outcome.error()
        if failure is not None:
            return self.fail(task, str(failure))
        if task.message_queue:
            return self.dispatch_next_message(task)
        if column.starts_executor:
            return self._start_executor(task, initial_prompt(task), status="executing")
        if task.agent_status == "queued":
            self.transition(task, "idle")
        self._give_up_slot(task)
        return task

    def resume_admitted(self, task_id: str, column_id: str) -> Optional[Task]:
        """Continue a task the gate just admitted from the wait list."""
        task = self._tasks.get(task_id)
        if task is None or task.column_id != column_id or task.agent_status == "error":
            self._release(column_id, task_id)
            return task
        kind = task.pending_admission
        task.in_progress = True
        task.queued_at = None
        task.pending_admission = None
        logger.info("Resuming admitted task {} in column {}", task_id, column_id)
        if kind == "message" and task.message_queue:
            return self.dispatch_next_message(task)
        column = self._columns.get(column_id)
        if column is None:
            self._give_up_slot(task)
            return task
        return self._begin_pipeline(task, column)

    def halt(self, task: Task, reason: SkipReason) -> Task:
        """Cancel the task's hooks, stop its executor and give up its slot.

        The task keeps its column and message queue. A task in error stays in
        error; every other status returns to idle.
        """
        self._runner.cancel(task.id, reason)
        task.active_pipeline_id = None
        if task.agent_status in ACTIVE_AGENT_STATUSES:
            self._stop_executor(task)
        task.in_progress = False
        task.queued_at = None
        task.pending_admission = None
        self._tasks.upsert(task)
        self._withdraw(task.column_id, task.id)
        if task.agent_status not in {"idle", "error"}:
            self.transition(task, "idle")
        return task

    # ------------------------------------------------------------------
    # Messages and executor events
    # ------------------------------------------------------------------

    def submit_message(self, task: Task, entry: MessageQueueEntry) -> Task:
        if not entry.prompt.strip():
            raise ValueError("Message prompt must not be empty")
        status = task.agent_status
        if status == "error":
            raise InvalidTransition(task.id, status, "thinking")
        if status == "waiting_for_user":
            task.message_queue.append(entry)
            return self.dispatch_next_message(task)
        if status in {"thinking", "executing", "queued"} or task.active_pipeline_id:
            task.message_queue.append(entry)
            self._tasks.upsert(task)
            self._bus.emit(
                channel="queue",
                event_type="task.message_queued",
                entity_id=task.id,
                payload={"message_id": entry.id, "queue_length": len(task.message_queue)},
            )
            logger.info("Queued message {} for task {} ({} waiting)", entry.id, task.id, len(task.message_queue))
            return task
        task.message_queue.append(entry)
        queued_at = now_iso()
        if self._gate.try_admit_or_enqueue(task.column_id, task.id, queued_at=queued_at, priority=task.queue_priority):
            task.in_progress = True
            return self.dispatch_next_message(task)
        column = self._columns.get(task.column_id) or Column(id=task.column_id)
        return self._wait_for_slot(task, column, "message", queued_at)

    def on_executor_event(self, task: Task, event: ExecutorEvent) -> Task:
        if event.output_line is not None:
            task.last_output = event.output_line
            self._tasks.upsert(task)
            self._bus.emit(
                channel="tasks",
                event_type="task.output",
                entity_id=task.id,
                payload={"line": event.output_line},
            )
        status = event.status
        if status is None:
            return task
        if status == "error":
            return self.fail(task, event.message or "Executor failed")
        if task.agent_status not in ACTIVE_AGENT_STATUSES:
            logger.warning(
                "Ignoring executor status {} for task {} in status {}", status, task.id, task.agent_status
            )
            return task
        if status == "idle":
            if task.message_queue:
                return self.dispatch_next_message(task)
            self.transition(task, "idle", message=event.message)
            self._give_up_slot(task)
            logger.info("Task {} finished its turn", task.id)
            return task
        return self.transition(task, status, message=event.message)
