"""Fractional position keys for ordering tasks inside a column.

Keys are decimals. Appending or prepending steps by a fixed gap; inserting
between two neighbours takes their midpoint rounded to a fixed number of
decimal places (the scale). When the rounded midpoint no longer lands strictly
between the neighbours, every task in the column is re-spaced onto multiples
of the gap and the insertion is retried.

With the default scale of 10 places and gap of 1000, roughly 43 consecutive
insertions into the same slot fit before a rebalance is needed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Context, Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence

from ..constants import POSITION_GAP, POSITION_INITIAL, POSITION_SCALE
from ..errors import PositionPrecisionExhausted
from .models import Placement

_CTX = Context(prec=80)


@dataclass(frozen=True, order=True)
class PositionKey:
    value: Decimal

    @classmethod
    def parse(cls, raw: object) -> Optional["PositionKey"]:
        if raw is None or raw == "":
            return None
        try:
            value = Decimal(str(raw))
        except InvalidOperation:
            return None
        if not value.is_finite():
            return None
        return cls(value)

    @classmethod
    def of(cls, raw: int | str | Decimal) -> "PositionKey":
        return cls(Decimal(raw))

    def __str__(self) -> str:
        text = format(self.value, "f")
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text or "0"


def midpoint(lower: PositionKey, upper: PositionKey, *, scale: int = POSITION_SCALE) -> PositionKey:
    """Return the rounded midpoint strictly between two keys.

    Raises:
        PositionPrecisionExhausted: if no key at `scale` places fits between them.
    """
    quantum = Decimal(1).scaleb(-scale)
    raw = _CTX.divide(_CTX.add(lower.value, upper.value), Decimal(2))
    mid = raw.quantize(quantum, rounding=ROUND_HALF_EVEN, context=_CTX)
    if not lower.value < mid < upper.value:
        raise PositionPrecisionExhausted(f"No key between {lower} and {upper} at scale {scale}")
    return PositionKey(mid)


def key_between(
    lower: Optional[PositionKey],
    upper: Optional[PositionKey],
    *,
    gap: int = POSITION_GAP,
    initial: int = POSITION_INITIAL,
    scale: int = POSITION_SCALE,
) -> PositionKey:
    if lower is not None and upper is not None:
        return midpoint(lower, upper, scale=scale)
    if lower is not None:
        return PositionKey(_CTX.add(lower.value, Decimal(gap)))
    if upper is not None:
        return PositionKey(_CTX.subtract(upper.value, Decimal(gap)))
    return PositionKey(Decimal(initial))


def spaced_keys(count: int, *, gap: int = POSITION_GAP, initial: int = POSITION_INITIAL) -> list[PositionKey]:
    return [PositionKey(Decimal(initial + index * gap)) for index in range(count)]


def ordering_key(position: object, task_id: str) -> tuple[int, Decimal, str]:
    """Sort key giving a strict total order: by position, then task id.

    Tasks whose stored position cannot be parsed sort after every valid key.
    """
    key = PositionKey.parse(position)
    if key is None:
        return (1, Decimal(0), task_id)
    return (0, key.value, task_id)


@dataclass
class Slot:
    task_id: str
    key: Optional[PositionKey]


@dataclass
class PlacementResult:
    key: PositionKey
    rebalanced: dict[str, PositionKey] = field(default_factory=dict)


class ColumnOrdering:
    """Ordering of the tasks currently in one column.

    Callers hold the column lock while computing and applying a placement so
    that two inserts cannot compute colliding keys.
    """

    def __init__(
        self,
        entries: Iterable[tuple[str, object]],
        *,
        gap: int = POSITION_GAP,
        initial: int = POSITION_INITIAL,
        scale: int = POSITION_SCALE,
    ) -> None:
        ordered = sorted(entries, key=lambda item: ordering_key(item[1], item[0]))
        self.slots = [Slot(task_id=task_id, key=PositionKey.parse(position)) for task_id, position in ordered]
        self.gap = gap
        self.initial = initial
        self.scale = scale

    def task_ids(self) -> list[str]:
        return [slot.task_id for slot in self.slots]

    def _index_for(self, placement: Placement, siblings: Sequence[Slot]) -> int:
        ids = [slot.task_id for slot in siblings]
        if placement.before_task_id and placement.before_task_id in ids:
            return ids.index(placement.before_task_id)
        if placement.after_task_id and placement.after_task_id in ids:
            return ids.index(placement.after_task_id) + 1
        if placement.at_start:
            return 0
        return len(ids)

    def place(self, task_id: str, placement: Placement) -> PlacementResult:
        """Compute the key for `task_id` at `placement`.

        The task itself is ignored among the siblings, so this serves both new
        tasks and moves within the same column. When precision runs out (or a
        neighbour has no usable key) the whole column is re-spaced and the
        returned `rebalanced` map holds every sibling's new key.
        """
        siblings = [slot for slot in self.slots if slot.task_id != task_id]
        index = self._index_for(placement, siblings)
        lower = siblings[index - 1] if index > 0 else None
        upper = siblings[index] if index < len(siblings) else None
        try:
            if (lower is not None and lower.key is None) or (upper is not None and upper.key is None):
                raise PositionPrecisionExhausted("Neighbour has no usable key")
            key = key_between(
                lower.key if lower else None,
                upper.key if upper else None,
                gap=self.gap,
                initial=self.initial,
                scale=self.scale,
            )
            return PlacementResult(key=key)
        except PositionPrecisionExhausted:
            order = [slot.task_id for slot in siblings]
            order.insert(index, task_id)
            keys = spaced_keys(len(order), gap=self.gap, initial=self.initial)
            assigned = dict(zip(order, keys))
            new_key = assigned.pop(task_id)
            return PlacementResult(key=new_key, rebalanced=assigned)

    def apply(self, task_id: str, result: PlacementResult) -> None:
        for slot in self.slots:
            if slot.task_id in result.rebalanced:
                slot.key = result.rebalanced[slot.task_id]
        self.slots = [slot for slot in self.slots if slot.task_id != task_id]
        self.slots.append(Slot(task_id=task_id, key=result.key))
        self.slots.sort(key=lambda slot: ordering_key(str(slot.key) if slot.key else None, slot.task_id))
