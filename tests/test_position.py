from __future__ import annotations

from decimal import Decimal

import pytest

from kanban_orchestrator.domain.models import Placement
from kanban_orchestrator.domain.position import (
    ColumnOrdering,
    PositionKey,
    key_between,
    midpoint,
    ordering_key,
    spaced_keys,
)
from kanban_orchestrator.errors import PositionPrecisionExhausted


def test_parse_rejects_garbage_and_non_finite_values() -> None:
    assert PositionKey.parse("1000") == PositionKey(Decimal("1000"))
    assert PositionKey.parse("") is None
    assert PositionKey.parse(None) is None
    assert PositionKey.parse("abc") is None
    assert PositionKey.parse("NaN") is None
    assert PositionKey.parse("Infinity") is None


def test_key_string_form_drops_trailing_zeros() -> None:
    assert str(PositionKey.of("1500.5000")) == "1500.5"
    assert str(PositionKey.of("2000.000")) == "2000"
    assert str(PositionKey.of(0)) == "0"


def test_midpoint_between_neighbours() -> None:
    assert midpoint(PositionKey.of(1000), PositionKey.of(2000)) == PositionKey.of(1500)
    assert midpoint(PositionKey.of(1000), PositionKey.of(1001)) == PositionKey.of("1000.5")


def test_midpoint_raises_when_scale_is_exhausted() -> None:
    lower = PositionKey.of("1")
    upper = PositionKey.of("1.0000000001")
    with pytest.raises(PositionPrecisionExhausted):
        midpoint(lower, upper, scale=10)


def test_key_between_open_ends_step_by_gap() -> None:
    assert key_between(None, None) == PositionKey.of(1000)
    assert key_between(PositionKey.of(3000), None) == PositionKey.of(4000)
    assert key_between(None, PositionKey.of(1000)) == PositionKey.of(0)
    assert key_between(None, None, initial=5, gap=10) == PositionKey.of(5)


def test_spaced_keys() -> None:
    assert [str(key) for key in spaced_keys(3)] == ["1000", "2000", "3000"]


def test_ordering_key_breaks_ties_by_task_id_and_sorts_invalid_last() -> None:
    entries = [("b", "1000"), ("a", "1000"), ("z", "oops"), ("c", "500")]
    ordered = sorted(entries, key=lambda item: ordering_key(item[1], item[0]))
    assert [task_id for task_id, _ in ordered] == ["c", "a", "b", "z"]


def test_append_prepend_and_insert_between() -> None:
    ordering = ColumnOrdering([("a", "1000"), ("b", "2000")])

    appended = ordering.place("c", Placement.end())
    assert str(appended.key) == "3000"
    ordering.apply("c", appended)

    prepended = ordering.place("d", Placement.start())
    assert str(prepended.key) == "0"
    ordering.apply("d", prepended)

    between = ordering.place("e", Placement(before_task_id="b"))
    assert str(between.key) == "1500"
    ordering.apply("e", between)

    assert ordering.task_ids() == ["d", "a", "e", "b", "c"]


def test_before_wins_over_after() -> None:
    ordering = ColumnOrdering([("a", "1000"), ("b", "2000"), ("c", "3000")])
    result = ordering.place("x", Placement(before_task_id="a", after_task_id="c"))
    assert result.key < PositionKey.of(1000)


def test_moving_within_column_ignores_own_slot() -> None:
    ordering = ColumnOrdering([("a", "1000"), ("b", "2000"), ("c", "3000")])
    result = ordering.place("a", Placement(after_task_id="c"))
    ordering.apply("a", result)
    assert ordering.task_ids() == ["b", "c", "a"]


def test_unknown_anchor_appends() -> None:
    ordering = ColumnOrdering([("a", "1000")])
    result = ordering.place("x", Placement(before_task_id="missing"))
    assert str(result.key) == "2000"


def test_repeated_inserts_into_same_gap_rebalance_and_keep_order() -> None:
    ordering = ColumnOrdering([("a", "1000"), ("b", "2000")])
    expected = ["a", "b"]
    rebalances = 0

    for index in range(80):
        task_id = f"x{index:02d}"
        result = ordering.place(task_id, Placement(after_task_id="a"))
        if result.rebalanced:
            rebalances += 1
        ordering.apply(task_id, result)
        expected.insert(1, task_id)
        assert ordering.task_ids() == expected

    assert rebalances >= 1
    keys = [slot.key for slot in ordering.slots]
    assert all(key is not None for key in keys)
    assert all(left < right for left, right in zip(keys, keys[1:]))


def test_unusable_neighbour_key_forces_rebalance() -> None:
    ordering = ColumnOrdering([("a", "garbage"), ("b", "1000")])
    assert ordering.task_ids() == ["b", "a"]

    result = ordering.place("c", Placement(after_task_id="b"))

    assert str(result.key) == "2000"
    assert {task_id: str(key) for task_id, key in result.rebalanced.items()} == {"b": "1000", "a": "3000"}
