from __future__ import annotations

import random
import threading
import time
from typing import Optional

from kanban_orchestrator.engine.gate import HIGH_PRIORITY, ConcurrencyGate


def _gate(limits: dict[str, Optional[int]]) -> ConcurrencyGate:
    return ConcurrencyGate(lambda column_id: limits.get(column_id))


def test_admits_up_to_limit_then_hands_freed_slot_to_waiter() -> None:
    gate = _gate({"col": 2})

    assert gate.try_admit("col", "a")
    assert gate.try_admit("col", "b")
    assert not gate.try_admit("col", "c")
    assert gate.enqueue("col", "c") == 1

    assert gate.release("col", "a") == ["c"]
    assert gate.running_count("col") == 2
    assert gate.queued("col") == []


def test_admission_is_idempotent_and_release_of_unheld_slot_is_noop() -> None:
    gate = _gate({"col": 1})

    assert gate.try_admit("col", "a")
    assert gate.try_admit("col", "a")
    assert gate.running_count("col") == 1

    assert gate.release("col", "nobody") == []
    assert gate.release("col", "a") == []
    assert gate.release("col", "a") == []
    assert gate.running_count("col") == 0


def test_waiters_are_ordered_by_queued_at_then_task_id() -> None:
    gate = _gate({"col": 1})
    gate.try_admit("col", "holder")

    gate.enqueue("col", "z", queued_at="2024-01-01T00:00:01+00:00")
    gate.enqueue("col", "a", queued_at="2024-01-01T00:00:01+00:00")
    gate.enqueue("col", "m", queued_at="2024-01-01T00:00:00+00:00")

    assert gate.queued("col") == ["m", "a", "z"]
    assert gate.release("col", "holder") == ["m"]


def test_newcomer_cannot_jump_the_line() -> None:
    limits: dict[str, Optional[int]] = {"col": 1}
    gate = _gate(limits)
    gate.try_admit("col", "a")
    gate.enqueue("col", "b")

    limits["col"] = 2
    assert not gate.try_admit("col", "c")
    assert gate.update_limit("col") == ["b"]
    assert gate.running_count("col") == 2


def test_withdraw_removes_waiter_or_frees_slot() -> None:
    gate = _gate({"col": 1})
    gate.try_admit("col", "a")
    gate.enqueue("col", "b")
    gate.enqueue("col", "c")

    assert gate.withdraw("col", "b") == []
    assert gate.queued("col") == ["c"]
    assert gate.withdraw("col", "a") == ["c"]
    assert gate.status("col")["running_tasks"] == ["c"]


def test_prioritize_moves_waiter_to_front() -> None:
    gate = _gate({"col": 1})
    gate.try_admit("col", "a")
    for task_id in ("b", "c", "d"):
        gate.enqueue("col", task_id)

    assert gate.prioritize("col", "d")
    assert not gate.prioritize("col", "missing")
    assert gate.queued("col") == ["d", "b", "c"]

    gate.enqueue("col", "e", priority=HIGH_PRIORITY, queued_at="2000-01-01T00:00:00+00:00")
    assert gate.queued("col")[0] == "e"


def test_unlimited_column_admits_everyone_and_counts_holders() -> None:
    gate = _gate({})
    for task_id in ("a", "b", "c"):
        assert gate.try_admit("free", task_id)
    status = gate.status("free")
    assert status["limited"] is False
    assert status["running_count"] == 3
    assert status["queue_length"] == 0


def test_restore_rebuilds_running_and_waiting() -> None:
    gate = _gate({"col": 1})
    gate.restore("col", ["a"], [("c", "2024-01-02T00:00:00+00:00", 0), ("b", "2024-01-01T00:00:00+00:00", 0)])

    assert gate.holds_slot("col", "a")
    assert gate.queued("col") == ["b", "c"]
    assert gate.release("col", "a") == ["b"]


def test_running_count_never_exceeds_limit_under_contention() -> None:
    limit = 3
    gate = _gate({"col": limit})
    holders = 0
    peak = 0
    counter_lock = threading.Lock()

    def _worker(task_id: str) -> None:
        nonlocal holders, peak
        for _ in range(20):
            if not gate.try_admit("col", task_id):
                time.sleep(0.001)
                continue
            with counter_lock:
                holders += 1
                peak = max(peak, holders)
            time.sleep(random.uniform(0, 0.002))
            with counter_lock:
                holders -= 1
            gate.release("col", task_id)

    threads = [threading.Thread(target=_worker, args=(f"t{i}",)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert peak <= limit
    assert gate.running_count("col") == 0


def test_refusal_and_enqueue_are_atomic_against_release() -> None:
    limits: dict[str, Optional[int]] = {"col": 1}
    armed = threading.Event()
    handed_over: list[list[str]] = []
    releasers: list[threading.Thread] = []

    def _lookup(column_id: str) -> Optional[int]:
        if armed.is_set():
            armed.clear()
            releaser = threading.Thread(target=lambda: handed_over.append(gate.release("col", "holder")))
            releasers.append(releaser)
            releaser.start()
            releaser.join(timeout=0.2)
        return limits.get(column_id)

    gate = ConcurrencyGate(_lookup)
    assert gate.try_admit("col", "holder")

    armed.set()
    assert not gate.try_admit_or_enqueue("col", "late")
    releasers[0].join(timeout=5)

    assert handed_over == [["late"]]
    assert gate.status("col")["running_tasks"] == ["late"]
    assert gate.queued("col") == []
