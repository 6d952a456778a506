"""Shared dataclasses used across the connector, sampler and ranker."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Iterator, Mapping


class RecordKind(str, Enum):
    """Category of introspection data shown in its own view."""

    PROCESSES = "processes"
    LOCKS = "locks"
    INDEXES = "indexes"
    STATEMENTS = "statements"

    @property
    def heading(self) -> str:
        return _KIND_TITLES[self]


_KIND_TITLES = {
    RecordKind.PROCESSES: "Processes",
    RecordKind.LOCKS: "Locks",
    RecordKind.INDEXES: "Index stats",
    RecordKind.STATEMENTS: "Statements",
}


@dataclass(frozen=True, slots=True)
class ConnectionProfile:
    """Runtime representation of the connection parameters."""

    name: str = "default"
    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    application_name: str = "pgscope"

    def describe(self) -> str:
        if self.dsn:
            return self.dsn.split("@")[-1]
        host = self.host or "localhost"
        port = self.port or 5432
        database = self.database or self.user or "postgres"
        return f"{host}:{port}/{database}"


@dataclass(frozen=True, slots=True)
class ResultSet:
    """Materialized rows of one round trip."""

    columns: tuple[str, ...]
    rows: tuple[tuple[Any, ...], ...]
    elapsed_ms: int = 0

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[tuple[Any, ...]]:
        return iter(self.rows)


@dataclass(frozen=True, slots=True)
class ProcessRecord:
    """One backend session from pg_stat_activity."""

    kind: ClassVar[RecordKind] = RecordKind.PROCESSES
    headers: ClassVar[tuple[str, ...]] = ("PID", "User", "Database", "Application", "Client", "State", "Wait", "Duration", "Query")

    pid: int
    user: str
    database: str
    application: str
    client: str
    state: str
    wait_event: str
    duration_s: float
    query: str

    def cells(self) -> tuple[object, ...]:
        return (
            self.pid,
            self.user,
            self.database,
            self.application,
            self.client,
            self.state,
            self.wait_event,
            f"{self.duration_s:.1f}s",
            self.query,
        )


@dataclass(frozen=True, slots=True)
class LockRecord:
    """One held or awaited lock from pg_locks."""

    kind: ClassVar[RecordKind] = RecordKind.LOCKS
    headers: ClassVar[tuple[str, ...]] = ("PID", "Type", "Relation", "Mode", "Granted")

    pid: int
    locktype: str
    relation: str
    mode: str
    granted: bool

    def cells(self) -> tuple[object, ...]:
        return (self.pid, self.locktype, self.relation, self.mode, "yes" if self.granted else "no")


@dataclass(frozen=True, slots=True)
class IndexStatRecord:
    """Per-index usage counters from pg_stat_user_indexes."""

    kind: ClassVar[RecordKind] = RecordKind.INDEXES
    headers: ClassVar[tuple[str, ...]] = ("OID", "Index", "Scans", "Tuples read", "Tuples fetched")

    identifier: int
    name: str
    scans: int
    tuples_read: int
    tuples_fetched: int

    def cells(self) -> tuple[object, ...]:
        return (self.identifier, self.name, self.scans, self.tuples_read, self.tuples_fetched)


@dataclass(frozen=True, slots=True)
class StatementRecord:
    """Aggregated pg_stat_statements entry; durations are formatted server-side."""

    kind: ClassVar[RecordKind] = RecordKind.STATEMENTS
    headers: ClassVar[tuple[str, ...]] = ("Calls", "Calls %", "Total time", "Avg time", "Query")

    calls: int
    calls_share: float
    total_time: str
    average_time: str
    query: str
    total_ms: float = 0.0
    average_ms: float = 0.0

    def cells(self) -> tuple[object, ...]:
        return (self.calls, f"{self.calls_share * 100:.2f}", self.total_time, self.average_time, self.query)


Record = ProcessRecord | LockRecord | IndexStatRecord | StatementRecord

RECORD_TYPES: Mapping[RecordKind, type] = {
    RecordKind.PROCESSES: ProcessRecord,
    RecordKind.LOCKS: LockRecord,
    RecordKind.INDEXES: IndexStatRecord,
    RecordKind.STATEMENTS: StatementRecord,
}


__all__ = [
    "ConnectionProfile",
    "IndexStatRecord",
    "LockRecord",
    "ProcessRecord",
    "RECORD_TYPES",
    "Record",
    "RecordKind",
    "ResultSet",
    "StatementRecord",
]
