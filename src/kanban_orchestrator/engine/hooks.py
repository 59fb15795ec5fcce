"""Column entry hooks: queueing, sequential execution and outcome reporting.

When a task enters a column, one `HookRun` is queued per bound hook (in
binding position order) under a fresh pipeline id. A worker then runs the
pending runs one at a time. The task's `active_pipeline_id` ties the worker to
the column entry that started it: once the task moves or is stopped the id is
cleared, the worker stops picking up runs, and the result of a hook that was
already running is dropped.
"""

from __future__ import annotations

import os
import subprocess
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

from loguru import logger

from ..constants import DEFAULT_MAX_ERROR_OUTPUT, DEFAULT_SCRIPT_TIMEOUT_SECONDS
from ..domain.models import Column, HookBinding, HookOutcome, HookRun, SkipReason, Task, TaskContext, now_iso
from ..errors import HookExecutionFailed
from ..events.bus import EventBus
from ..storage.interfaces import ColumnRepository, HookRunRepository, TaskRepository


@dataclass
class ScriptResult:
    exit_code: Optional[int]
    output: str = ""
    timed_out: bool = False


@dataclass
class AgentHookResult:
    success: bool
    output: str = ""


class HookBackend(Protocol):
    def run_script(self, command: str, context: TaskContext) -> ScriptResult:
        ...

    def run_agent_hook(self, prompt: str, executor: str, auto_approve: bool, context: TaskContext) -> AgentHookResult:
        ...


AgentRunner = Callable[[str, str, bool, TaskContext], AgentHookResult]


class SubprocessHookBackend:
    """Runs script hooks through the shell; agent hooks go to `agent_runner`."""

    def __init__(
        self,
        *,
        timeout_seconds: int = DEFAULT_SCRIPT_TIMEOUT_SECONDS,
        agent_runner: Optional[AgentRunner] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.agent_runner = agent_runner

    def _env(self, context: TaskContext) -> dict[str, str]:
        env = dict(os.environ)
        env["KANBAN_TASK_ID"] = context.task_id
        env["KANBAN_COLUMN_ID"] = context.column_id
        env["KANBAN_TASK_TITLE"] = context.title
        env["KANBAN_WORKTREE_PATH"] = context.worktree_path or ""
        return env

    def run_script(self, command: str, context: TaskContext) -> ScriptResult:
        cwd = context.worktree_path if context.has_workspace and os.path.isdir(context.worktree_path or "") else None
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=cwd,
                env=self._env(context),
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            partial = exc.stdout if isinstance(exc.stdout, str) else ""
            return ScriptResult(exit_code=None, output=partial, timed_out=True)
        output = (proc.stdout or "") + (proc.stderr or "")
        return ScriptResult(exit_code=proc.returncode, output=output)

    def run_agent_hook(self, prompt: str, executor: str, auto_approve: bool, context: TaskContext) -> AgentHookResult:
        if self.agent_runner is None:
            return AgentHookResult(success=False, output="No agent hook runner configured")
        return self.agent_runner(prompt, executor, auto_approve, context)


def format_hook_error(hook_name: str, outcome: HookOutcome, *, max_output: int = DEFAULT_MAX_ERROR_OUTPUT) -> str:
    if outcome.timed_out:
        return f"Hook '{hook_name}' timed out"
    if outcome.error:
        return f"Hook '{hook_name}' failed: {outcome.error}"
    truncated = (outcome.output or "")[:max_output]
    if outcome.exit_code is not None:
        return f"Hook '{hook_name}' failed with exit code {outcome.exit_code}: {truncated}"
    return f"Hook '{hook_name}' failed: {truncated}"


@dataclass
class PipelineOutcome:
    clean: bool
    error_message: Optional[str] = None
    failed_hook: Optional[str] = None

    @property
    def blocked(self) -> bool:
        return not self.clean

    def error(self) -> Optional[HookExecutionFailed]:
        if self.clean:
            return None
        hook_name = self.failed_hook or "hook"
        return HookExecutionFailed(hook_name, self.error_message or f"Hook '{hook_name}' failed")


class HookQueue:
    """The runs of one pipeline invocation, in execution order."""

    def __init__(self, runs: list[HookRun]) -> None:
        self.runs = sorted(runs, key=lambda run: (run.position, run.queued_at, run.binding_id))

    def next_pending(self) -> Optional[HookRun]:
        for run in self.runs:
            if run.status == "pending":
                return run
        return None

    def blocking_failure(self) -> Optional[HookRun]:
        for run in self.runs:
            if run.status == "failed" and not run.transparent:
                return run
        return None

    def has_pending(self) -> bool:
        return self.next_pending() is not None

    def outcome(self) -> PipelineOutcome:
        failure = self.blocking_failure()
        if failure is None:
            return PipelineOutcome(clean=True)
        return PipelineOutcome(clean=False, error_message=failure.error_message, failed_hook=failure.hook_name)


class HookPipelineRunner:
    def __init__(
        self,
        *,
        hook_runs: HookRunRepository,
        tasks: TaskRepository,
        columns: ColumnRepository,
        bus: EventBus,
        backend: HookBackend,
        lock_for: Callable[[str], AbstractContextManager[Any]],
        submit: Callable[..., Any],
        on_drained: Callable[[str, str, PipelineOutcome], None],
        max_error_output: int = DEFAULT_MAX_ERROR_OUTPUT,
    ) -> None:
        self._hook_runs = hook_runs
        self._tasks = tasks
        self._columns = columns
        self._bus = bus
        self._backend = backend
        self._lock_for = lock_for
        self._submit = submit
        self._on_drained = on_drained
        self._max_error_output = max_error_output

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def plan(self, task: Task, column: Column, pipeline_id: str) -> list[HookRun]:
        """Build the runs for `task` entering `column`.

        Disabled columns get no runs. Execute-once bindings that already ran
        for this task are left out entirely. A task already in error only runs
        its transparent hooks; the rest are recorded as skipped.
        """
        if not column.hooks_enabled:
            return []
        runs: list[HookRun] = []
        for binding in column.ordered_hooks():
            if binding.execute_once and binding.id in task.executed_hooks:
                continue
            run = HookRun(
                task_id=task.id,
                binding_id=binding.id,
                hook_name=binding.name,
                column_id=column.id,
                pipeline_id=pipeline_id,
                position=binding.position,
                transparent=binding.transparent,
                execute_once=binding.execute_once,
            )
            if task.agent_status == "error" and not binding.transparent:
                run.status = "skipped"
                run.skip_reason = "error"
                run.completed_at = now_iso()
            runs.append(run)
        return runs

    def start(self, task: Task, column: Column) -> tuple[str, HookQueue]:
        """Queue the entry runs for `task` and return the new pipeline id.

        The caller stores the id on the task and, if the queue has pending runs,
        calls `dispatch` once the task is saved.
        """
        pipeline_id = f"pipe-{uuid.uuid4().hex[:10]}"
        runs = self.plan(task, column, pipeline_id)
        if runs:
            self._hook_runs.upsert_many(runs)
            for run in runs:
                self._emit(run)
        pending = sum(1 for run in runs if run.status == "pending")
        logger.info("Queued {} hooks for task {} in column {}", pending, task.id, column.id)
        return pipeline_id, HookQueue(runs)

    def queue_for(self, task_id: str, pipeline_id: str) -> HookQueue:
        return HookQueue([run for run in self._hook_runs.for_task(task_id) if run.pipeline_id == pipeline_id])

    def history(self, task_id: str) -> list[HookRun]:
        runs = self._hook_runs.for_task(task_id)
        runs.sort(key=lambda run: (run.queued_at, run.position), reverse=True)
        return runs

    def dispatch(self, task_id: str, pipeline_id: str) -> None:
        self._submit(self._drive, task_id, pipeline_id)

    def cancel(self, task_id: str, reason: SkipReason) -> list[HookRun]:
        """Cancel the task's pending runs and abandon its running one."""
        active = [run for run in self._hook_runs.for_task(task_id) if not run.finished]
        if not active:
            return []
        for run in active:
            run.status = "cancelled"
            run.skip_reason = reason
            run.completed_at = now_iso()
        self._hook_runs.upsert_many(active)
        for run in active:
            self._emit(run)
        logger.info("Cancelled {} hook runs for task {} ({})", len(active), task_id, reason)
        return active

    def reconcile_restart(self) -> list[HookRun]:
        interrupted = [run for run in self._hook_runs.list() if run.status == "running"]
        for run in interrupted:
            run.status = "cancelled"
            run.skip_reason = "server_restart"
            run.completed_at = now_iso()
        if interrupted:
            self._hook_runs.upsert_many(interrupted)
            for run in interrupted:
                self._emit(run)
            logger.info("Cancelled {} running hooks (server restart)", len(interrupted))
        return interrupted

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _emit(self, run: HookRun) -> None:
        self._bus.emit(
            channel="hooks",
            event_type="hook_run.status_changed",
            entity_id=run.id,
            payload={
                "task_id": run.task_id,
                "hook_run_id": run.id,
                "hook_name": run.hook_name,
                "column_id": run.column_id,
                "status": run.status,
                "skip_reason": run.skip_reason,
                "error_message": run.error_message,
            },
        )

    def _binding_for(self, run: HookRun) -> Optional[HookBinding]:
        column = self._columns.get(run.column_id)
        if column is None:
            return None
        for binding in column.hooks:
            if binding.id == run.binding_id:
                return binding
        return None

    def _save(self, run: HookRun) -> None:
        self._hook_runs.upsert(run)
        self._emit(run)

    def _execute(self, binding: HookBinding, context: TaskContext) -> HookOutcome:
        try:
            return binding.kind.execute(self._backend, context)
        except Exception as exc:
            logger.exception("Hook {} raised for task {}", binding.name, context.task_id)
            return HookOutcome(success=False, error=str(exc) or exc.__class__.__name__)

    def _mark_executed(self, task_id: str, binding_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None or binding_id in task.executed_hooks:
            return
        task.executed_hooks.append(binding_id)
        self._tasks.upsert(task)

    def _drive(self, task_id: str, pipeline_id: str) -> None:
        while True:
            with self._lock_for(task_id):
                task = self._tasks.get(task_id)
                if task is None or task.active_pipeline_id != pipeline_id:
                    logger.info("Pipeline {} for task {} was superseded", pipeline_id, task_id)
                    return
                queue = self.queue_for(task_id, pipeline_id)
                run = queue.next_pending()
                if run is None:
                    self._on_drained(task_id, pipeline_id, queue.outcome())
                    return
                if queue.blocking_failure() is not None and not run.transparent:
                    run.status = "skipped"
                    run.skip_reason = "error"
                    run.completed_at = now_iso()
                    self._save(run)
                    continue
                binding = self._binding_for(run)
                if binding is None:
                    run.status = "failed"
                    run.error_message = f"Hook '{run.hook_name}' failed: hook not found"
                    run.completed_at = now_iso()
                    self._save(run)
                    continue
                run.status = "running"
                run.started_at = now_iso()
                self._save(run)
                context = task.context()
                logger.info("Starting hook {} for task {}", run.hook_name, task_id)

            outcome = self._execute(binding, context)

            with self._lock_for(task_id):
                current = self._hook_runs.get(run.id)
                task = self._tasks.get(task_id)
                if current is None or current.status != "running" or task is None or task.active_pipeline_id != pipeline_id:
                    logger.info("Discarding result of hook {} for task {}", run.hook_name, task_id)
                    return
                current.output = outcome.output or None
                current.completed_at = now_iso()
                if outcome.success:
                    current.status = "completed"
                    logger.info("Hook {} completed for task {}", current.hook_name, task_id)
                else:
                    current.status = "failed"
                    current.error_message = format_hook_error(
                        current.hook_name, outcome, max_output=self._max_error_output
                    )
                    if current.transparent:
                        logger.warning("Transparent hook {} failed: {}", current.hook_name, current.error_message)
                    else:
                        logger.error("Task {} hook {} failed: {}", task_id, current.hook_name, current.error_message)
                self._save(current)
                if current.execute_once:
                    self._mark_executed(task_id, current.binding_id)
