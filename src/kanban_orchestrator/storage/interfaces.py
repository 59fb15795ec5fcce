from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from ..domain.models import Column, HookRun, Task


class TaskRepository(ABC):
    @abstractmethod
    def list(self) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def get(self, task_id: str) -> Optional[Task]:
        raise NotImplementedError

    @abstractmethod
    def in_column(self, column_id: str) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, task: Task) -> Task:
        raise NotImplementedError

    @abstractmethod
    def upsert_many(self, tasks: Iterable[Task]) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def place_many(self, tasks: Iterable[Task]) -> list[Task]:
        raise NotImplementedError

    @abstractmethod
    def delete(self, task_id: str) -> bool:
        raise NotImplementedError


class ColumnRepository(ABC):
    @abstractmethod
    def list(self) -> list[Column]:
        raise NotImplementedError

    @abstractmethod
    def get(self, column_id: str) -> Optional[Column]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, column: Column) -> Column:
        raise NotImplementedError

    @abstractmethod
    def delete(self, column_id: str) -> bool:
        raise NotImplementedError


class HookRunRepository(ABC):
    @abstractmethod
    def list(self) -> list[HookRun]:
        raise NotImplementedError

    @abstractmethod
    def get(self, run_id: str) -> Optional[HookRun]:
        raise NotImplementedError

    @abstractmethod
    def for_task(self, task_id: str) -> list[HookRun]:
        raise NotImplementedError

    @abstractmethod
    def upsert(self, run: HookRun) -> HookRun:
        raise NotImplementedError

    @abstractmethod
    def upsert_many(self, runs: Iterable[HookRun]) -> list[HookRun]:
        raise NotImplementedError

    @abstractmethod
    def delete_for_task(self, task_id: str) -> int:
        raise NotImplementedError


class EventRepository(ABC):
    @abstractmethod
    def append(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any], project_id: str) -> dict[str, Any]:
        raise NotImplementedError

    @abstractmethod
    def list_recent(self, limit: int = 100) -> list[dict[str, Any]]:
        raise NotImplementedError
