from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from kanban_orchestrator.api import create_app


def _client(tmp_path: Path, executor: Any = None, backend: Any = None) -> TestClient:
    return TestClient(create_app(tmp_path, executor=executor, backend=backend))


def _columns(client: TestClient) -> dict[str, str]:
    return {column["name"]: column["id"] for column in client.get("/api/columns").json()["columns"]}


def test_default_board_and_task_flow(tmp_path: Path, executor, backend) -> None:
    with _client(tmp_path, executor, backend) as client:
        assert client.get("/").json()["status"] == "running"
        columns = _columns(client)
        assert list(columns) == ["TODO", "In Progress", "To Review", "Done", "Cancelled"]

        created = client.post("/api/tasks", json={"title": "Wire login", "description": "OAuth"})
        assert created.status_code == 200
        task = created.json()["task"]
        assert task["column_id"] == columns["TODO"]
        assert task["position"] == "1000"
        assert task["agent_status"] == "idle"

        moved = client.post(f"/api/tasks/{task['id']}/move", json={"column_id": columns["In Progress"]})
        assert moved.json()["task"]["agent_status"] == "executing"
        assert executor.prompts_for(task["id"]) == ["Wire login\n\nOAuth"]

        thinking = client.post(f"/api/tasks/{task['id']}/executor-events", json={"status": "thinking"})
        assert thinking.json()["task"]["agent_status"] == "thinking"

        status = client.get(f"/api/columns/{columns['In Progress']}/status").json()
        assert status["running_tasks"] == [task["id"]]

        listed = client.get("/api/tasks", params={"column_id": columns["In Progress"]}).json()
        assert listed["total"] == 1

        stopped = client.post(f"/api/tasks/{task['id']}/stop")
        assert stopped.json()["task"]["agent_status"] == "idle"
        assert executor.stopped == [task["id"]]


def test_error_responses(tmp_path: Path, executor, backend) -> None:
    with _client(tmp_path, executor, backend) as client:
        assert client.get("/api/tasks/task-missing").status_code == 404
        assert client.get("/api/tasks", params={"column_id": "column-missing"}).status_code == 404
        assert client.post("/api/tasks", json={"title": "   "}).status_code == 400

        task = client.post("/api/tasks", json={"title": "Fragile"}).json()["task"]
        assert client.post(f"/api/tasks/{task['id']}/messages", json={"prompt": ""}).status_code == 400

        bogus = client.post(f"/api/tasks/{task['id']}/executor-events", json={"status": "dancing"})
        assert bogus.status_code == 400

        failed = client.post(
            f"/api/tasks/{task['id']}/executor-events", json={"status": "error", "message": "crashed"}
        ).json()["task"]
        assert failed["agent_status"] == "error"
        assert failed["error_message"] == "crashed"

        conflict = client.post(f"/api/tasks/{task['id']}/messages", json={"prompt": "retry"})
        assert conflict.status_code == 409
        assert conflict.json()["detail"]["current_status"] == "error"

        cleared = client.post(f"/api/tasks/{task['id']}/clear-error")
        assert cleared.json()["task"]["agent_status"] == "idle"


def test_column_create_patch_and_hook_runs(tmp_path: Path, executor, backend) -> None:
    with _client(tmp_path, executor, backend) as client:
        column = client.post(
            "/api/columns",
            json={
                "name": "QA",
                "position": 10,
                "max_concurrent_tasks": 1,
                "hooks": [{"name": "lint", "position": 1, "kind": {"kind": "script", "command": "make lint"}}],
            },
        ).json()["column"]
        assert column["hooks"][0]["kind"] == {"kind": "script", "command": "make lint"}

        task = client.post("/api/tasks", json={"title": "Check", "column_id": column["id"]}).json()["task"]
        client.app.state.scheduler.wait_for_idle()

        runs = client.get(f"/api/tasks/{task['id']}/hook-runs").json()["hook_runs"]
        assert [(run["hook_name"], run["status"]) for run in runs] == [("lint", "completed")]
        assert backend.commands(task["id"]) == ["make lint"]

        patched = client.patch(f"/api/columns/{column['id']}", json={"max_concurrent_tasks": None, "name": "QA lane"})
        assert patched.json()["column"]["max_concurrent_tasks"] is None
        assert patched.json()["column"]["name"] == "QA lane"

        untouched = client.patch(f"/api/columns/{column['id']}", json={"hooks_enabled": False})
        assert untouched.json()["column"]["max_concurrent_tasks"] is None
        assert untouched.json()["column"]["hooks_enabled"] is False

        bad_hook = client.post("/api/columns", json={"name": "Bad", "hooks": [{"kind": {"kind": "webhook"}}]})
        assert bad_hook.status_code == 400

        events = client.get("/api/events", params={"limit": 500}).json()["events"]
        assert "hook_run.status_changed" in {event["type"] for event in events}


def test_deferred_executor_requests_are_drained(tmp_path: Path, backend) -> None:
    with _client(tmp_path, backend=backend) as client:
        columns = _columns(client)
        task = client.post("/api/tasks", json={"title": "Queue me", "column_id": columns["In Progress"]}).json()["task"]
        assert task["agent_status"] == "executing"

        drained = client.post("/api/executor/requests/drain").json()["requests"]
        assert [(item["action"], item["task_id"], item["prompt"]) for item in drained] == [
            ("start", task["id"], "Queue me")
        ]
        assert client.post("/api/executor/requests/drain").json()["requests"] == []


def test_drain_rejected_for_direct_executor(tmp_path: Path, executor, backend) -> None:
    with _client(tmp_path, executor, backend) as client:
        assert client.post("/api/executor/requests/drain").status_code == 400


def test_delete_and_prioritize_routes(tmp_path: Path, executor, backend) -> None:
    with _client(tmp_path, executor, backend) as client:
        columns = _columns(client)
        client.patch(f"/api/columns/{columns['In Progress']}", json={"max_concurrent_tasks": 1})
        holder = client.post("/api/tasks", json={"title": "holder", "column_id": columns["In Progress"]}).json()["task"]
        first = client.post("/api/tasks", json={"title": "first", "column_id": columns["In Progress"]}).json()["task"]
        second = client.post("/api/tasks", json={"title": "second", "column_id": columns["In Progress"]}).json()["task"]
        assert second["agent_status"] == "queued"

        prioritized = client.post(f"/api/tasks/{second['id']}/prioritize").json()["task"]
        assert prioritized["queue_priority"] > 0
        status = client.get(f"/api/columns/{columns['In Progress']}/status").json()
        assert status["queued_tasks"] == [second["id"], first["id"]]

        deleted = client.delete(f"/api/tasks/{holder['id']}").json()
        assert deleted == {"deleted": True, "task_id": holder["id"]}
        client.app.state.scheduler.wait_for_idle()

        assert client.get(f"/api/tasks/{second['id']}").json()["task"]["agent_status"] == "executing"
        assert client.get(f"/api/tasks/{holder['id']}").status_code == 404
