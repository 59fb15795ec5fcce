from __future__ import annotations

from typing import Any, NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from ..constants import DEFAULT_EXECUTOR_TYPE
from ..domain.models import Column, ExecutorEvent, HookBinding, HookRun, Placement, Task
from ..engine.executor import DeferredExecutor
from ..engine.scheduler import Scheduler
from ..errors import ColumnNotFound, InvalidTransition, TaskNotFound


class PlacementRequest(BaseModel):
    before_task_id: Optional[str] = None
    after_task_id: Optional[str] = None
    at_start: bool = False

    def to_placement(self) -> Placement:
        return Placement(before_task_id=self.before_task_id, after_task_id=self.after_task_id, at_start=self.at_start)


class CreateTaskRequest(PlacementRequest):
    title: str
    description: str = ""
    column_id: Optional[str] = None
    parent_task_id: Optional[str] = None
    worktree_path: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class MoveTaskRequest(PlacementRequest):
    column_id: str


class SendMessageRequest(BaseModel):
    prompt: str
    images: list[dict[str, Any]] = Field(default_factory=list)
    executor_type: str = DEFAULT_EXECUTOR_TYPE


class ExecutorEventRequest(BaseModel):
    status: Optional[str] = None
    message: Optional[str] = None
    output_line: Optional[str] = None


class CreateColumnRequest(BaseModel):
    name: str
    position: int = 0
    max_concurrent_tasks: Optional[int] = Field(None, ge=1)
    hooks_enabled: bool = True
    starts_executor: bool = False
    hooks: list[dict[str, Any]] = Field(default_factory=list)


class UpdateColumnRequest(BaseModel):
    name: Optional[str] = None
    max_concurrent_tasks: Optional[int] = Field(None, ge=1)
    hooks_enabled: Optional[bool] = None
    starts_executor: Optional[bool] = None


def _task_payload(task: Task) -> dict[str, Any]:
    return task.to_dict()


def _hook_run_payload(run: HookRun) -> dict[str, Any]:
    return run.to_dict()


def _column_payload(column: Column) -> dict[str, Any]:
    return column.to_dict()


def _raise_http(exc: Exception) -> NoReturn:
    if isinstance(exc, (TaskNotFound, ColumnNotFound)):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, InvalidTransition):
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "current_status": exc.current_status},
        ) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    raise exc


def create_router(scheduler: Scheduler) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["api"])

    @router.post("/tasks")
    async def create_task(body: CreateTaskRequest) -> dict[str, Any]:
        try:
            task = scheduler.create_task(
                body.title,
                column_id=body.column_id,
                description=body.description,
                placement=body.to_placement(),
                parent_task_id=body.parent_task_id,
                worktree_path=body.worktree_path,
                metadata=body.metadata,
            )
        except (LookupError, ValueError) as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.get("/tasks")
    async def list_tasks(column_id: Optional[str] = Query(None)) -> dict[str, Any]:
        try:
            tasks = scheduler.list_tasks(column_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"tasks": [_task_payload(task) for task in tasks], "total": len(tasks)}

    @router.get("/tasks/{task_id}")
    async def get_task(task_id: str) -> dict[str, Any]:
        try:
            task = scheduler.get_task(task_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.delete("/tasks/{task_id}")
    async def delete_task(task_id: str) -> dict[str, Any]:
        try:
            deleted = scheduler.delete_task(task_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"deleted": deleted, "task_id": task_id}

    @router.post("/tasks/{task_id}/move")
    async def move_task(task_id: str, body: MoveTaskRequest) -> dict[str, Any]:
        try:
            task = scheduler.move_task(task_id, body.column_id, body.to_placement())
        except LookupError as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.post("/tasks/{task_id}/stop")
    async def stop_task(task_id: str) -> dict[str, Any]:
        try:
            task = scheduler.stop_task(task_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.post("/tasks/{task_id}/clear-error")
    async def clear_error(task_id: str) -> dict[str, Any]:
        try:
            task = scheduler.clear_error(task_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.post("/tasks/{task_id}/prioritize")
    async def prioritize(task_id: str) -> dict[str, Any]:
        try:
            task = scheduler.prioritize(task_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.post("/tasks/{task_id}/messages")
    async def send_message(task_id: str, body: SendMessageRequest) -> dict[str, Any]:
        try:
            task = scheduler.send_message(
                task_id, body.prompt, images=body.images, executor_type=body.executor_type
            )
        except (LookupError, ValueError, InvalidTransition) as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.post("/tasks/{task_id}/executor-events")
    async def report_executor_event(task_id: str, body: ExecutorEventRequest) -> dict[str, Any]:
        try:
            event = ExecutorEvent.from_dict(body.model_dump())
            task = scheduler.report_executor_event(task_id, event)
        except (LookupError, ValueError) as exc:
            _raise_http(exc)
        return {"task": _task_payload(task)}

    @router.get("/tasks/{task_id}/hook-runs")
    async def hook_runs(task_id: str) -> dict[str, Any]:
        try:
            runs = scheduler.hook_runs_for(task_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"hook_runs": [_hook_run_payload(run) for run in runs]}

    @router.get("/columns")
    async def list_columns() -> dict[str, Any]:
        return {"columns": [_column_payload(column) for column in scheduler.list_columns()]}

    @router.post("/columns")
    async def create_column(body: CreateColumnRequest) -> dict[str, Any]:
        try:
            column = Column(
                name=body.name,
                position=body.position,
                max_concurrent_tasks=body.max_concurrent_tasks,
                hooks_enabled=body.hooks_enabled,
                starts_executor=body.starts_executor,
                hooks=[HookBinding.from_dict(item) for item in body.hooks],
            )
        except ValueError as exc:
            _raise_http(exc)
        return {"column": _column_payload(scheduler.add_column(column))}

    @router.patch("/columns/{column_id}")
    async def update_column(column_id: str, body: UpdateColumnRequest) -> dict[str, Any]:
        changes: dict[str, Any] = {
            "name": body.name,
            "hooks_enabled": body.hooks_enabled,
            "starts_executor": body.starts_executor,
        }
        if "max_concurrent_tasks" in body.model_fields_set:
            changes["max_concurrent_tasks"] = body.max_concurrent_tasks
        try:
            column = scheduler.update_column(column_id, **changes)
        except LookupError as exc:
            _raise_http(exc)
        return {"column": _column_payload(column)}

    @router.get("/columns/{column_id}/status")
    async def column_status(column_id: str) -> dict[str, Any]:
        try:
            status = scheduler.column_status(column_id)
        except LookupError as exc:
            _raise_http(exc)
        return {"column_id": column_id, **status}

    @router.post("/executor/requests/drain")
    async def drain_executor_requests() -> dict[str, Any]:
        executor = scheduler.executor
        if not isinstance(executor, DeferredExecutor):
            raise HTTPException(status_code=400, detail="Executor does not queue requests")
        return {"requests": [request.to_dict() for request in executor.drain()]}

    @router.get("/events")
    async def recent_events(limit: int = Query(100, ge=1, le=1000)) -> dict[str, Any]:
        return {"events": scheduler.container.events.list_recent(limit)}

    return router
