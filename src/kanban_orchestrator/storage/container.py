from __future__ import annotations

from pathlib import Path

from ..config import EngineConfig
from .bootstrap import ensure_state_root
from .file_repos import (
    FileColumnRepository,
    FileConfigRepository,
    FileEventRepository,
    FileHookRunRepository,
    FileTaskRepository,
)


class Container:
    def __init__(self, project_dir: Path) -> None:
        self.project_dir = project_dir.resolve()
        self.state_root = ensure_state_root(self.project_dir)

        self.tasks = FileTaskRepository(self.state_root / "tasks.yaml", self.state_root / "tasks.lock")
        self.columns = FileColumnRepository(self.state_root / "columns.yaml", self.state_root / "columns.lock")
        self.hook_runs = FileHookRunRepository(self.state_root / "hook_runs.yaml", self.state_root / "hook_runs.lock")
        self.events = FileEventRepository(self.state_root / "events.jsonl", self.state_root / "events.lock")
        self.config = FileConfigRepository(self.state_root / "config.yaml", self.state_root / "config.lock")

    @property
    def project_id(self) -> str:
        return self.project_dir.name

    def engine_config(self) -> EngineConfig:
        return EngineConfig.from_dict(self.config.load())
