"""Per-column admission control.

A column with `max_concurrent_tasks = N` lets at most N tasks hold a slot.
Tasks that are turned away wait in a per-column list ordered by queue
priority, then queued-at timestamp, then task id; freeing a slot hands it to
the head of that list. Unlimited columns admit everything but still track the
tasks holding a slot so `running_count` stays meaningful.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from loguru import logger

from ..domain.models import now_iso

LimitLookup = Callable[[str], Optional[int]]

# Queue priority given to a task moved to the front of its column's wait list.
HIGH_PRIORITY = 1000


@dataclass
class _Waiter:
    task_id: str
    queued_at: str
    priority: int = 0

    def sort_key(self) -> tuple[int, str, str]:
        return (-self.priority, self.queued_at, self.task_id)


@dataclass
class _ColumnSlots:
    running: set[str] = field(default_factory=set)
    waiting: list[_Waiter] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def drop_waiter(self, task_id: str) -> bool:
        before = len(self.waiting)
        self.waiting = [waiter for waiter in self.waiting if waiter.task_id != task_id]
        return len(self.waiting) != before


class ConcurrencyGate:
    def __init__(self, limits: LimitLookup) -> None:
        self._limits = limits
        self._columns: dict[str, _ColumnSlots] = {}
        self._lock = threading.Lock()

    def _slots(self, column_id: str) -> _ColumnSlots:
        with self._lock:
            slots = self._columns.get(column_id)
            if slots is None:
                slots = _ColumnSlots()
                self._columns[column_id] = slots
            return slots

    def _has_capacity(self, column_id: str, slots: _ColumnSlots) -> bool:
        limit = self._limits(column_id)
        return limit is None or len(slots.running) < limit

    def _pump(self, column_id: str, slots: _ColumnSlots) -> list[str]:
        admitted: list[str] = []
        while slots.waiting and self._has_capacity(column_id, slots):
            waiter = slots.waiting.pop(0)
            slots.running.add(waiter.task_id)
            admitted.append(waiter.task_id)
            logger.info("Admitted queued task {} into column {}", waiter.task_id, column_id)
        return admitted

    def _admit_locked(self, column_id: str, slots: _ColumnSlots, task_id: str) -> bool:
        if task_id in slots.running:
            return True
        ahead = [waiter for waiter in slots.waiting if waiter.task_id != task_id]
        if not ahead and self._has_capacity(column_id, slots):
            slots.drop_waiter(task_id)
            slots.running.add(task_id)
            return True
        return False

    def _enqueue_locked(self, slots: _ColumnSlots, task_id: str, queued_at: Optional[str], priority: int) -> int:
        if task_id in slots.running:
            return 0
        if not any(waiter.task_id == task_id for waiter in slots.waiting):
            slots.waiting.append(_Waiter(task_id=task_id, queued_at=queued_at or now_iso(), priority=priority))
            slots.waiting.sort(key=_Waiter.sort_key)
        return [waiter.task_id for waiter in slots.waiting].index(task_id) + 1

    def try_admit(self, column_id: str, task_id: str) -> bool:
        """Reserve a slot for `task_id` if the column has room.

        A task already holding a slot is admitted again without taking a second
        one. Newcomers are refused while other tasks are waiting ahead of them.
        """
        slots = self._slots(column_id)
        with slots.lock:
            return self._admit_locked(column_id, slots, task_id)

    def try_admit_or_enqueue(
        self, column_id: str, task_id: str, *, queued_at: Optional[str] = None, priority: int = 0
    ) -> bool:
        """Reserve a slot, or join the wait list if the column is full.

        Refusal and enqueueing happen under one lock, so a slot freed
        concurrently is always handed to the waiter by `release`.
        Returns True when a slot was reserved.
        """
        slots = self._slots(column_id)
        with slots.lock:
            if self._admit_locked(column_id, slots, task_id):
                return True
            place = self._enqueue_locked(slots, task_id, queued_at, priority)
        logger.info("Task {} queued at position {} in column {}", task_id, place, column_id)
        return False

    def enqueue(self, column_id: str, task_id: str, *, queued_at: Optional[str] = None, priority: int = 0) -> int:
        """Put a refused task on the wait list; returns its 1-based place."""
        slots = self._slots(column_id)
        with slots.lock:
            place = self._enqueue_locked(slots, task_id, queued_at, priority)
        logger.info("Task {} queued at position {} in column {}", task_id, place, column_id)
        return place

    def release(self, column_id: str, task_id: str) -> list[str]:
        """Free the slot held by `task_id`; returns the tasks admitted in its place.

        Releasing a slot that is not held is a no-op.
        """
        slots = self._slots(column_id)
        with slots.lock:
            if task_id not in slots.running:
                return []
            slots.running.discard(task_id)
            logger.info("Task {} released its slot in column {}", task_id, column_id)
            return self._pump(column_id, slots)

    def withdraw(self, column_id: str, task_id: str) -> list[str]:
        """Forget `task_id` entirely (it left the column); returns newly admitted tasks."""
        slots = self._slots(column_id)
        with slots.lock:
            slots.running.discard(task_id)
            slots.drop_waiter(task_id)
            return self._pump(column_id, slots)

    def prioritize(self, column_id: str, task_id: str) -> bool:
        slots = self._slots(column_id)
        with slots.lock:
            for waiter in slots.waiting:
                if waiter.task_id == task_id:
                    waiter.priority = HIGH_PRIORITY
                    slots.waiting.remove(waiter)
                    slots.waiting.insert(0, waiter)
                    return True
        return False

    def update_limit(self, column_id: str) -> list[str]:
        """Re-read the column's limit and admit waiters it now allows."""
        slots = self._slots(column_id)
        with slots.lock:
            return self._pump(column_id, slots)

    def restore(self, column_id: str, running: Iterable[str], waiting: Iterable[tuple[str, str, int]]) -> None:
        """Rebuild a column's state after a restart.

        Args:
            column_id: Column to rebuild.
            running: Task ids that still hold a slot.
            waiting: `(task_id, queued_at, priority)` tuples for waiting tasks.
        """
        slots = self._slots(column_id)
        with slots.lock:
            slots.running = set(running)
            slots.waiting = [_Waiter(task_id=tid, queued_at=ts, priority=prio) for tid, ts, prio in waiting]
            slots.waiting.sort(key=_Waiter.sort_key)

    def holds_slot(self, column_id: str, task_id: str) -> bool:
        slots = self._slots(column_id)
        with slots.lock:
            return task_id in slots.running

    def running_count(self, column_id: str) -> int:
        slots = self._slots(column_id)
        with slots.lock:
            return len(slots.running)

    def queued(self, column_id: str) -> list[str]:
        slots = self._slots(column_id)
        with slots.lock:
            return [waiter.task_id for waiter in slots.waiting]

    def status(self, column_id: str) -> dict[str, Any]:
        limit = self._limits(column_id)
        slots = self._slots(column_id)
        with slots.lock:
            return {
                "limited": limit is not None,
                "max_concurrent": limit,
                "running_count": len(slots.running),
                "running_tasks": sorted(slots.running),
                "queue_length": len(slots.waiting),
                "queued_tasks": [waiter.task_id for waiter in slots.waiting],
            }
