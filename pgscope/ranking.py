"""Ordering-key registry and the stable ranker."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from operator import attrgetter
from typing import Any, Callable, Iterable, Sequence, TypeVar

from .models import Record, RecordKind

RecordT = TypeVar("RecordT", bound=Record)


class Direction(str, Enum):
    """Sort direction, independent of which ordering key is selected."""

    ASCENDING = "asc"
    DESCENDING = "desc"

    def flipped(self) -> Direction:
        return Direction.ASCENDING if self is Direction.DESCENDING else Direction.DESCENDING


@dataclass(frozen=True, slots=True)
class OrderingKey:
    """Named sort criterion bound to one field of one record kind."""

    name: str
    label: str
    kind: RecordKind
    accessor: Callable[[Any], Any]
    default_direction: Direction = Direction.DESCENDING
    statement_column: int | None = None


def _key(
    kind: RecordKind,
    name: str,
    label: str,
    field: str,
    direction: Direction = Direction.DESCENDING,
    statement_column: int | None = None,
) -> OrderingKey:
    return OrderingKey(
        name=name,
        label=label,
        kind=kind,
        accessor=attrgetter(field),
        default_direction=direction,
        statement_column=statement_column,
    )


DEFAULT_KEYS: tuple[OrderingKey, ...] = (
    _key(RecordKind.PROCESSES, "duration", "by query duration", "duration_s"),
    _key(RecordKind.PROCESSES, "pid", "by pid", "pid", Direction.ASCENDING),
    _key(RecordKind.PROCESSES, "user", "by user", "user", Direction.ASCENDING),
    _key(RecordKind.PROCESSES, "state", "by state", "state", Direction.ASCENDING),
    _key(RecordKind.LOCKS, "pid", "by pid", "pid", Direction.ASCENDING),
    _key(RecordKind.LOCKS, "relation", "by relation", "relation", Direction.ASCENDING),
    _key(RecordKind.LOCKS, "mode", "by mode", "mode", Direction.ASCENDING),
    _key(RecordKind.LOCKS, "granted", "by granted", "granted", Direction.ASCENDING),
    _key(RecordKind.INDEXES, "idx_scan", "by scan count", "scans"),
    _key(RecordKind.INDEXES, "idx_tup_fetch", "by tuples fetched", "tuples_fetched"),
    _key(RecordKind.INDEXES, "idx_tup_read", "by tuples read", "tuples_read"),
    _key(RecordKind.INDEXES, "name", "by name", "name", Direction.ASCENDING),
    _key(RecordKind.STATEMENTS, "calls", "by calls", "calls", statement_column=1),
    _key(RecordKind.STATEMENTS, "calls_share", "by calls %", "calls_share", statement_column=2),
    _key(RecordKind.STATEMENTS, "total_time", "by total time", "total_ms", statement_column=3),
    _key(RecordKind.STATEMENTS, "average_time", "by average time", "average_ms", statement_column=4),
    _key(RecordKind.STATEMENTS, "query", "by query text", "query", Direction.ASCENDING, statement_column=5),
)


class KeyRegistry:
    """Maps ordering-key names (and per-kind display indices) to keys."""

    def __init__(self, keys: Iterable[OrderingKey] = DEFAULT_KEYS) -> None:
        self._by_kind: dict[RecordKind, list[OrderingKey]] = {kind: [] for kind in RecordKind}
        self._by_name: dict[tuple[RecordKind, str], OrderingKey] = {}
        for key in keys:
            if (key.kind, key.name) in self._by_name:
                raise ValueError(f"Ordering key '{key.name}' registered twice for {key.kind.value}")
            self._by_name[(key.kind, key.name)] = key
            self._by_kind[key.kind].append(key)

    def keys_for(self, kind: RecordKind) -> tuple[OrderingKey, ...]:
        """Keys for one record kind in display order."""

        return tuple(self._by_kind[kind])

    def default_for(self, kind: RecordKind) -> OrderingKey:
        keys = self._by_kind[kind]
        if not keys:
            raise KeyError(f"No ordering keys registered for {kind.value}")
        return keys[0]

    def get(self, kind: RecordKind, name: str) -> OrderingKey:
        try:
            return self._by_name[(kind, name)]
        except KeyError:
            known = ", ".join(key.name for key in self._by_kind[kind])
            raise KeyError(f"Unknown ordering key '{name}' for {kind.value} (known: {known})") from None

    def by_index(self, kind: RecordKind, index: int) -> OrderingKey:
        keys = self._by_kind[kind]
        if not 0 <= index < len(keys):
            raise IndexError(f"Ordering index {index} out of range for {kind.value}")
        return keys[index]

    def index_of(self, key: OrderingKey) -> int:
        return self._by_kind[key.kind].index(key)

    def next_after(self, key: OrderingKey) -> OrderingKey:
        keys = self._by_kind[key.kind]
        return keys[(keys.index(key) + 1) % len(keys)]

    def resolve(self, kind: RecordKind, selector: str | int) -> OrderingKey:
        """Resolve a name or a display index."""

        if isinstance(selector, int):
            return self.by_index(kind, selector)
        return self.get(kind, selector)


def rank(
    records: Sequence[RecordT],
    key: OrderingKey,
    direction: Direction | None = None,
) -> list[RecordT]:
    """Return the records ordered by ``key``; ties keep their input order.

    Records are never mutated, only the sequence is rebuilt.
    """

    for record in records:
        if record.kind is not key.kind:
            raise ValueError(
                f"Cannot rank {record.kind.value} records with the {key.kind.value} key '{key.name}'"
            )
    direction = direction or key.default_direction
    return sorted(records, key=key.accessor, reverse=direction is Direction.DESCENDING)


def truncate(ranked: Sequence[RecordT], limit: int | None) -> list[RecordT]:
    """Keep the first ``limit`` ranked records (all of them when ``limit`` is None)."""

    if limit is None:
        return list(ranked)
    if limit < 0:
        raise ValueError(f"Window size must not be negative, got {limit}")
    return list(ranked[:limit])


__all__ = [
    "DEFAULT_KEYS",
    "Direction",
    "KeyRegistry",
    "OrderingKey",
    "rank",
    "truncate",
]
