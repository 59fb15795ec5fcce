from __future__ import annotations

from pathlib import Path

import yaml

from kanban_orchestrator.config import EngineConfig
from kanban_orchestrator.domain.models import Column, HookBinding, HookRun, MessageQueueEntry, ScriptHook, Task
from kanban_orchestrator.storage.bootstrap import DEFAULT_COLUMNS, seed_default_columns
from kanban_orchestrator.storage.container import Container


def test_container_creates_state_files(tmp_path: Path) -> None:
    container = Container(tmp_path)
    root = tmp_path / ".kanban"

    for name in ("tasks.yaml", "columns.yaml", "hook_runs.yaml", "events.jsonl", "config.yaml"):
        assert (root / name).exists()
    config = yaml.safe_load((root / "config.yaml").read_text(encoding="utf-8"))
    assert config["schema_version"] == 1
    assert config["positions"]["gap"] == 1000
    assert container.project_id == tmp_path.name


def test_task_round_trip_keeps_queue_and_flags(tmp_path: Path) -> None:
    container = Container(tmp_path)
    task = Task(
        title="Persist me",
        column_id="column-1",
        position="1500.5",
        agent_status="queued",
        queued_at="2024-01-01T00:00:00+00:00",
        pending_admission="message",
        executed_hooks=["binding-1"],
        message_queue=[MessageQueueEntry(prompt="first"), MessageQueueEntry(prompt="second")],
    )
    container.tasks.upsert(task)

    loaded = Container(tmp_path).tasks.get(task.id)

    assert loaded is not None
    assert loaded.position == "1500.5"
    assert loaded.agent_status == "queued"
    assert loaded.pending_admission == "message"
    assert loaded.executed_hooks == ["binding-1"]
    assert [entry.prompt for entry in loaded.message_queue] == ["first", "second"]


def test_in_column_orders_by_position_key(tmp_path: Path) -> None:
    container = Container(tmp_path)
    container.tasks.upsert_many(
        [
            Task(id="task-b", column_id="c", position="2000"),
            Task(id="task-a", column_id="c", position="999.5"),
            Task(id="task-x", column_id="c", position="not-a-number"),
            Task(id="task-other", column_id="elsewhere", position="1"),
        ]
    )

    assert [task.id for task in container.tasks.in_column("c")] == ["task-a", "task-b", "task-x"]
    assert container.tasks.delete("task-b")
    assert not container.tasks.delete("task-b")


def test_column_round_trip_and_invalid_limit(tmp_path: Path) -> None:
    container = Container(tmp_path)
    binding = HookBinding(kind=ScriptHook(command="make test"), name="tests", position=2, execute_once=True)
    container.columns.upsert(Column(name="Work", hooks=[binding], max_concurrent_tasks=2, starts_executor=True))

    loaded = container.columns.list()[0]
    assert loaded.max_concurrent_tasks == 2
    assert loaded.starts_executor is True
    assert loaded.hooks[0].kind == ScriptHook(command="make test")
    assert loaded.hooks[0].execute_once is True

    assert Column.from_dict({"name": "Broken", "max_concurrent_tasks": 0}).max_concurrent_tasks is None
    assert Column.from_dict({"name": "Broken", "max_concurrent_tasks": "lots"}).max_concurrent_tasks is None


def test_hook_runs_for_task_and_delete(tmp_path: Path) -> None:
    container = Container(tmp_path)
    container.hook_runs.upsert_many(
        [
            HookRun(task_id="t1", binding_id="b1", hook_name="one"),
            HookRun(task_id="t1", binding_id="b2", hook_name="two"),
            HookRun(task_id="t2", binding_id="b1", hook_name="one"),
        ]
    )

    assert len(container.hook_runs.for_task("t1")) == 2
    assert container.hook_runs.delete_for_task("t1") == 2
    assert [run.task_id for run in container.hook_runs.list()] == ["t2"]


def test_engine_config_defaults_and_invalid_values(tmp_path: Path) -> None:
    container = Container(tmp_path)
    assert container.engine_config() == EngineConfig()

    config = container.config.load()
    config["positions"]["gap"] = "wide"
    config["hooks"]["script_timeout_seconds"] = -5
    config["board"]["entry_column_id"] = "column-42"
    container.config.save(config)

    loaded = container.engine_config()
    assert loaded.position_gap == 1000
    assert loaded.script_timeout_seconds == 600
    assert loaded.entry_column_id == "column-42"


def test_seed_default_columns_is_idempotent(tmp_path: Path) -> None:
    container = Container(tmp_path)

    first = seed_default_columns(container.columns)
    second = seed_default_columns(container.columns)

    assert [column.name for column in first] == [defaults["name"] for defaults in DEFAULT_COLUMNS]
    assert [column.id for column in second] == [column.id for column in first]
    assert [column.name for column in container.columns.list() if column.starts_executor] == ["In Progress"]


def test_event_log_returns_most_recent(tmp_path: Path) -> None:
    container = Container(tmp_path)
    for index in range(5):
        container.events.append(
            channel="tasks", event_type="task.created", entity_id=f"task-{index}", payload={}, project_id="p"
        )

    recent = container.events.list_recent(limit=2)

    assert [event["entity_id"] for event in recent] == ["task-3", "task-4"]
    assert container.events.list_recent(limit=0) == []
