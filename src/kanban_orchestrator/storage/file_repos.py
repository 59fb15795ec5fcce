from __future__ import annotations

import json
import threading
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

from ..constants import SCHEMA_VERSION
from ..domain.models import Column, HookRun, Task, now_iso
from ..domain.position import ordering_key
from ..io_utils import FileLock, append_jsonl, atomic_write_yaml, load_yaml_mapping
from .interfaces import ColumnRepository, EventRepository, HookRunRepository, TaskRepository

T = TypeVar("T")


class _YamlCollectionRepo(Generic[T]):
    """A list of records stored under one key of a YAML document.

    Every read-modify-write happens under both a thread lock and a
    cross-process file lock.
    """

    def __init__(
        self,
        path: Path,
        lock_path: Path,
        key: str,
        loader: Callable[[dict[str, Any]], T],
        dumper: Callable[[T], dict[str, Any]],
        ident: Callable[[T], str],
    ) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()
        self._key = key
        self._loader = loader
        self._dumper = dumper
        self._ident = ident

    def _load(self) -> list[T]:
        raw = load_yaml_mapping(self._path)
        items = raw.get(self._key, [])
        if not isinstance(items, list):
            return []
        return [self._loader(item) for item in items if isinstance(item, dict)]

    def _save(self, items: list[T]) -> None:
        atomic_write_yaml(self._path, {"version": SCHEMA_VERSION, self._key: [self._dumper(item) for item in items]})

    def all(self) -> list[T]:
        with self._thread_lock:
            with self._lock:
                return self._load()

    def find(self, ident: str) -> Optional[T]:
        for item in self.all():
            if self._ident(item) == ident:
                return item
        return None

    def upsert_many(self, records: Iterable[T], touch: Optional[Callable[[T, Optional[T]], T]] = None) -> list[T]:
        incoming = list(records)
        if not incoming:
            return incoming
        with self._thread_lock:
            with self._lock:
                items = self._load()
                index = {self._ident(item): pos for pos, item in enumerate(items)}
                for record in incoming:
                    pos = index.get(self._ident(record))
                    stored = record if touch is None else touch(record, None if pos is None else items[pos])
                    if pos is None:
                        index[self._ident(record)] = len(items)
                        items.append(stored)
                    else:
                        items[pos] = stored
                self._save(items)
        return incoming

    def remove(self, predicate: Callable[[T], bool]) -> int:
        with self._thread_lock:
            with self._lock:
                items = self._load()
                keep = [item for item in items if not predicate(item)]
                removed = len(items) - len(keep)
                if removed:
                    self._save(keep)
        return removed


def _touch_task(task: Task, previous: Optional[Task]) -> Task:
    task.updated_at = now_iso()
    if previous is None:
        task.created_at = task.created_at or now_iso()
    return task


def _keep_placement(task: Task, previous: Optional[Task]) -> Task:
    """State writes never move a task; only `place_many` changes column and key."""
    _touch_task(task, previous)
    if previous is not None:
        task.column_id = previous.column_id
        task.position = previous.position
    return task


def _placement_only(task: Task, previous: Optional[Task]) -> Task:
    if previous is None:
        return _touch_task(task, None)
    previous.column_id = task.column_id
    previous.position = task.position
    previous.updated_at = task.updated_at = now_iso()
    return previous


class FileTaskRepository(TaskRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Task](
            path,
            lock_path,
            "tasks",
            loader=Task.from_dict,
            dumper=lambda t: t.to_dict(),
            ident=lambda t: t.id,
        )

    def list(self) -> list[Task]:
        return self._repo.all()

    def get(self, task_id: str) -> Optional[Task]:
        return self._repo.find(task_id)

    def in_column(self, column_id: str) -> list[Task]:
        tasks = [task for task in self._repo.all() if task.column_id == column_id]
        tasks.sort(key=lambda task: ordering_key(task.position, task.id))
        return tasks

    def upsert(self, task: Task) -> Task:
        self._repo.upsert_many([task], touch=_keep_placement)
        return task

    def upsert_many(self, tasks: Iterable[Task]) -> list[Task]:
        return self._repo.upsert_many(tasks, touch=_keep_placement)

    def place_many(self, tasks: Iterable[Task]) -> list[Task]:
        """Write column and key only; the rest of a stored record is left as is."""
        return self._repo.upsert_many(tasks, touch=_placement_only)

    def delete(self, task_id: str) -> bool:
        return self._repo.remove(lambda t: t.id == task_id) > 0


class FileColumnRepository(ColumnRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[Column](
            path,
            lock_path,
            "columns",
            loader=Column.from_dict,
            dumper=lambda c: c.to_dict(),
            ident=lambda c: c.id,
        )

    def list(self) -> list[Column]:
        columns = self._repo.all()
        columns.sort(key=lambda column: (column.position, column.id))
        return columns

    def get(self, column_id: str) -> Optional[Column]:
        return self._repo.find(column_id)

    def upsert(self, column: Column) -> Column:
        self._repo.upsert_many([column])
        return column

    def delete(self, column_id: str) -> bool:
        return self._repo.remove(lambda c: c.id == column_id) > 0


class FileHookRunRepository(HookRunRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._repo = _YamlCollectionRepo[HookRun](
            path,
            lock_path,
            "hook_runs",
            loader=HookRun.from_dict,
            dumper=lambda r: r.to_dict(),
            ident=lambda r: r.id,
        )

    def list(self) -> list[HookRun]:
        return self._repo.all()

    def get(self, run_id: str) -> Optional[HookRun]:
        return self._repo.find(run_id)

    def for_task(self, task_id: str) -> list[HookRun]:
        return [run for run in self._repo.all() if run.task_id == task_id]

    def upsert(self, run: HookRun) -> HookRun:
        self._repo.upsert_many([run])
        return run

    def upsert_many(self, runs: Iterable[HookRun]) -> list[HookRun]:
        return self._repo.upsert_many(runs)

    def delete_for_task(self, task_id: str) -> int:
        return self._repo.remove(lambda r: r.task_id == task_id)


class FileEventRepository(EventRepository):
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "channel": channel,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
            "project_id": project_id,
        }
        with self._thread_lock:
            with self._lock:
                append_jsonl(self._path, event)
        return event

    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit <= 0 or not self._path.exists():
            return []
        with self._thread_lock:
            with self._lock:
                with self._path.open("r", encoding="utf-8") as handle:
                    selected = list(deque(handle, maxlen=limit))
        events: list[dict[str, Any]] = []
        for line in selected:
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                events.append(parsed)
        return events


class FileConfigRepository:
    def __init__(self, path: Path, lock_path: Path) -> None:
        self._path = path
        self._lock = FileLock(lock_path)
        self._thread_lock = threading.RLock()

    def load(self) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                return load_yaml_mapping(self._path)

    def save(self, config: dict[str, Any]) -> dict[str, Any]:
        with self._thread_lock:
            with self._lock:
                atomic_write_yaml(self._path, config)
        return config
