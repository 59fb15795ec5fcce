from __future__ import annotations

from pathlib import Path

from ..config import default_config
from ..constants import (
    COLUMNS_FILE,
    CONFIG_FILE,
    EVENTS_FILE,
    HOOK_RUNS_FILE,
    SCHEMA_VERSION,
    STATE_DIR_NAME,
    TASKS_FILE,
)
from ..domain.models import Column
from .file_repos import FileColumnRepository, FileConfigRepository

STATE_FILES = {
    "tasks": TASKS_FILE,
    "columns": COLUMNS_FILE,
    "hook_runs": HOOK_RUNS_FILE,
    "events": EVENTS_FILE,
    "config": CONFIG_FILE,
}

DEFAULT_COLUMNS = (
    {"name": "TODO", "position": 0},
    {"name": "In Progress", "position": 1, "starts_executor": True},
    {"name": "To Review", "position": 2},
    {"name": "Done", "position": 3},
    {"name": "Cancelled", "position": 4},
)


def ensure_state_root(project_dir: Path) -> Path:
    state_root = project_dir / STATE_DIR_NAME
    state_root.mkdir(parents=True, exist_ok=True)

    for file_name in STATE_FILES.values():
        target = state_root / file_name
        if file_name.endswith(".yaml") and not target.exists():
            target.write_text(f"version: {SCHEMA_VERSION}\n", encoding="utf-8")
        if file_name.endswith(".jsonl") and not target.exists():
            target.touch()

    config_repo = FileConfigRepository(state_root / CONFIG_FILE, state_root / "config.lock")
    config = config_repo.load()
    defaults = default_config()
    config.pop("version", None)
    config["schema_version"] = SCHEMA_VERSION
    for section in ("positions", "hooks", "board"):
        merged = dict(defaults[section])
        merged.update(dict(config.get(section) or {}))
        config[section] = merged
    config_repo.save(config)

    return state_root


def seed_default_columns(columns: FileColumnRepository) -> list[Column]:
    """Create the standard board columns when none are configured yet."""
    existing = columns.list()
    if existing:
        return existing
    created = [Column.from_dict(dict(defaults)) for defaults in DEFAULT_COLUMNS]
    for column in created:
        columns.upsert(column)
    return created
