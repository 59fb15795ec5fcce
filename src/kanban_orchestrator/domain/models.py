from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal, Optional, Union

from ..constants import DEFAULT_EXECUTOR_TYPE, EXECUTOR_STATUSES

if TYPE_CHECKING:
    from ..engine.hooks import HookBackend


AgentStatus = Literal["idle", "queued", "thinking", "executing", "waiting_for_user", "error"]
HookRunStatus = Literal["pending", "running", "completed", "failed", "cancelled", "skipped"]
SkipReason = Literal["error", "disabled", "column_change", "server_restart", "user_cancelled"]
AdmissionKind = Literal["entry", "message"]
ExecutorStatus = Literal["thinking", "executing", "waiting_for_user", "idle", "error"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


@dataclass
class TaskContext:
    """What a hook gets to know about the task it runs against."""

    task_id: str
    column_id: str
    title: str = ""
    description: str = ""
    worktree_path: Optional[str] = None

    @property
    def has_workspace(self) -> bool:
        return bool(self.worktree_path)


@dataclass
class HookOutcome:
    success: bool
    output: str = ""
    exit_code: Optional[int] = None
    error: Optional[str] = None
    timed_out: bool = False


@dataclass(frozen=True)
class ScriptHook:
    command: str
    kind: Literal["script"] = "script"

    def execute(self, backend: "HookBackend", context: TaskContext) -> HookOutcome:
        result = backend.run_script(self.command, context)
        return HookOutcome(
            success=result.exit_code == 0 and not result.timed_out,
            output=result.output,
            exit_code=result.exit_code,
            timed_out=result.timed_out,
        )

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "command": self.command}


@dataclass(frozen=True)
class AgentHook:
    prompt: str
    executor: str = DEFAULT_EXECUTOR_TYPE
    auto_approve: bool = False
    kind: Literal["agent"] = "agent"

    def execute(self, backend: "HookBackend", context: TaskContext) -> HookOutcome:
        result = backend.run_agent_hook(self.prompt, self.executor, self.auto_approve, context)
        return HookOutcome(success=bool(result.success), output=result.output)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "prompt": self.prompt,
            "executor": self.executor,
            "auto_approve": self.auto_approve,
        }


HookKind = Union[ScriptHook, AgentHook]


def hook_kind_from_dict(data: dict[str, Any]) -> HookKind:
    kind = str(data.get("kind") or "script")
    if kind == "script":
        command = str(data.get("command") or "").strip()
        if not command:
            raise ValueError("Script hooks require a command")
        return ScriptHook(command=command)
    if kind == "agent":
        prompt = str(data.get("prompt") or "").strip()
        if not prompt:
            raise ValueError("Agent hooks require a prompt")
        return AgentHook(
            prompt=prompt,
            executor=str(data.get("executor") or DEFAULT_EXECUTOR_TYPE),
            auto_approve=bool(data.get("auto_approve", False)),
        )
    raise ValueError(f"Unknown hook kind: {kind}")


@dataclass
class HookBinding:
    kind: HookKind
    name: str = ""
    id: str = field(default_factory=lambda: _id("binding"))
    hook_id: Optional[str] = None
    position: int = 0
    execute_once: bool = False
    transparent: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "hook_id": self.hook_id,
            "name": self.name,
            "position": self.position,
            "execute_once": self.execute_once,
            "transparent": self.transparent,
            "kind": self.kind.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HookBinding":
        kind = hook_kind_from_dict(dict(data.get("kind") or {}))
        return cls(
            id=str(data.get("id") or _id("binding")),
            hook_id=data.get("hook_id"),
            name=str(data.get("name") or data.get("hook_id") or kind.kind),
            position=int(data.get("position") or 0),
            execute_once=bool(data.get("execute_once", False)),
            transparent=bool(data.get("transparent", False)),
            kind=kind,
        )


@dataclass
class Column:
    name: str = ""
    id: str = field(default_factory=lambda: _id("column"))
    position: int = 0
    hooks: list[HookBinding] = field(default_factory=list)
    max_concurrent_tasks: Optional[int] = None
    hooks_enabled: bool = True
    starts_executor: bool = False

    def ordered_hooks(self) -> list[HookBinding]:
        return sorted(self.hooks, key=lambda binding: (binding.position, binding.id))

    @property
    def limited(self) -> bool:
        return self.max_concurrent_tasks is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "position": self.position,
            "max_concurrent_tasks": self.max_concurrent_tasks,
            "hooks_enabled": self.hooks_enabled,
            "starts_executor": self.starts_executor,
            "hooks": [binding.to_dict() for binding in self.hooks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Column":
        raw_limit = data.get("max_concurrent_tasks")
        limit: Optional[int] = None
        if raw_limit is not None:
            try:
                limit = int(raw_limit)
            except (TypeError, ValueError):
                limit = None
            if limit is not None and limit < 1:
                limit = None
        return cls(
            id=str(data.get("id") or _id("column")),
            name=str(data.get("name") or ""),
            position=int(data.get("position") or 0),
            hooks=[HookBinding.from_dict(item) for item in list(data.get("hooks") or []) if isinstance(item, dict)],
            max_concurrent_tasks=limit,
            hooks_enabled=bool(data.get("hooks_enabled", True)),
            starts_executor=bool(data.get("starts_executor", False)),
        )


@dataclass
class MessageQueueEntry:
    prompt: str
    id: str = field(default_factory=lambda: _id("msg"))
    executor_type: str = DEFAULT_EXECUTOR_TYPE
    images: list[dict[str, Any]] = field(default_factory=list)
    queued_at: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MessageQueueEntry":
        return cls(
            id=str(data.get("id") or _id("msg")),
            prompt=str(data.get("prompt") or ""),
            executor_type=str(data.get("executor_type") or DEFAULT_EXECUTOR_TYPE),
            images=[item for item in list(data.get("images") or []) if isinstance(item, dict)],
            queued_at=str(data.get("queued_at") or now_iso()),
        )


@dataclass
class Task:
    id: str = field(default_factory=lambda: _id("task"))
    title: str = ""
    description: str = ""
    column_id: str = ""
    position: str = ""

    agent_status: AgentStatus = "idle"
    agent_status_message: Optional[str] = None
    error_message: Optional[str] = None
    message_queue: list[MessageQueueEntry] = field(default_factory=list)

    in_progress: bool = False
    queued_at: Optional[str] = None
    queue_priority: int = 0
    pending_admission: Optional[AdmissionKind] = None

    is_parent: bool = False
    parent_task_id: Optional[str] = None

    executed_hooks: list[str] = field(default_factory=list)
    active_pipeline_id: Optional[str] = None
    worktree_path: Optional[str] = None
    last_output: Optional[str] = None

    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    def context(self) -> TaskContext:
        return TaskContext(
            task_id=self.id,
            column_id=self.column_id,
            title=self.title,
            description=self.description,
            worktree_path=self.worktree_path,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["message_queue"] = [entry.to_dict() for entry in self.message_queue]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("task"))
        payload["title"] = str(data.get("title") or "")
        payload["description"] = str(data.get("description") or "")
        payload["column_id"] = str(data.get("column_id") or "")
        payload["position"] = str(data.get("position") or "")
        payload["agent_status"] = str(data.get("agent_status") or "idle")
        payload["message_queue"] = [
            MessageQueueEntry.from_dict(item) for item in list(data.get("message_queue") or []) if isinstance(item, dict)
        ]
        payload["in_progress"] = bool(data.get("in_progress", False))
        payload["queue_priority"] = int(data.get("queue_priority") or 0)
        payload["is_parent"] = bool(data.get("is_parent", False))
        payload["executed_hooks"] = list(data.get("executed_hooks") or [])
        payload["created_at"] = str(data.get("created_at") or now_iso())
        payload["updated_at"] = str(data.get("updated_at") or now_iso())
        payload["metadata"] = dict(data.get("metadata") or {})
        return cls(**payload)


@dataclass
class HookRun:
    task_id: str = ""
    binding_id: str = ""
    id: str = field(default_factory=lambda: _id("hookrun"))
    hook_name: str = ""
    column_id: str = ""
    pipeline_id: str = ""
    position: int = 0
    transparent: bool = False
    execute_once: bool = False
    status: HookRunStatus = "pending"
    skip_reason: Optional[SkipReason] = None
    error_message: Optional[str] = None
    output: Optional[str] = None
    queued_at: str = field(default_factory=now_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in {"completed", "failed", "cancelled", "skipped"}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HookRun":
        payload = {k: data.get(k) for k in cls.__dataclass_fields__}
        payload["id"] = str(data.get("id") or _id("hookrun"))
        payload["task_id"] = str(data.get("task_id") or "")
        payload["binding_id"] = str(data.get("binding_id") or "")
        payload["hook_name"] = str(data.get("hook_name") or "")
        payload["column_id"] = str(data.get("column_id") or "")
        payload["pipeline_id"] = str(data.get("pipeline_id") or "")
        payload["position"] = int(data.get("position") or 0)
        payload["transparent"] = bool(data.get("transparent", False))
        payload["execute_once"] = bool(data.get("execute_once", False))
        payload["status"] = str(data.get("status") or "pending")
        payload["queued_at"] = str(data.get("queued_at") or now_iso())
        return cls(**payload)


@dataclass
class ExecutorEvent:
    """One item from the executor's asynchronous status stream."""

    status: Optional[ExecutorStatus] = None
    message: Optional[str] = None
    output_line: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExecutorEvent":
        status = data.get("status")
        if status and status not in EXECUTOR_STATUSES:
            raise ValueError(f"Unknown executor status: {status}")
        return cls(
            status=str(status) if status else None,
            message=data.get("message"),
            output_line=data.get("output_line"),
        )


@dataclass(frozen=True)
class Placement:
    """Where a task should land inside a column.

    `before_task_id` wins over `after_task_id`; `at_start` prepends; with
    nothing set the task is appended.
    """

    before_task_id: Optional[str] = None
    after_task_id: Optional[str] = None
    at_start: bool = False

    @classmethod
    def end(cls) -> "Placement":
        return cls()

    @classmethod
    def start(cls) -> "Placement":
        return cls(at_start=True)
