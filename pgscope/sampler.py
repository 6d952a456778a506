"""Sampler turning introspection queries into immutable record lists."""

from __future__ import annotations

from .connections import Connector, Session
from .errors import SourceUnavailable
from .models import IndexStatRecord, LockRecord, ProcessRecord, ResultSet, StatementRecord
from .queries import (
    SELECT_CURRENT_QUERY,
    SELECT_INDEX_STATS,
    SELECT_LOCKS,
    SELECT_PROCESSES,
    select_statements,
)


class Sampler:
    """Issues the fixed set of introspection queries against a borrowed session.

    Every sample is a single round trip and all-or-nothing: a rejected query
    surfaces as QueryError from the connector and no records are returned.
    """

    def __init__(self, connector: Connector) -> None:
        self._connector = connector

    async def sample_processes(self, session: Session) -> list[ProcessRecord]:
        result = await self._connector.query(session, SELECT_PROCESSES)
        return [
            ProcessRecord(
                pid=int(row[0]),
                user=str(row[1]),
                database=str(row[2]),
                application=str(row[3]),
                client=str(row[4]),
                state=str(row[5]),
                wait_event=str(row[6]),
                duration_s=_as_float(row[7]),
                query=str(row[8]),
            )
            for row in result
        ]

    async def sample_locks(
        self,
        session: Session,
        pid: int | None = None,
        mode: str | None = None,
    ) -> list[LockRecord]:
        """List locks, optionally only those of one backend and/or one lock mode."""

        result = await self._connector.query(session, SELECT_LOCKS, pid, mode)
        return [
            LockRecord(
                pid=int(row[0]),
                locktype=str(row[1]),
                relation=str(row[2]),
                mode=str(row[3]),
                granted=bool(row[4]),
            )
            for row in result
        ]

    async def sample_index_stats(self, session: Session) -> list[IndexStatRecord]:
        result = await self._connector.query(session, SELECT_INDEX_STATS)
        return [
            IndexStatRecord(
                identifier=int(row[0]),
                name=str(row[1]),
                scans=_as_int(row[2]),
                tuples_read=_as_int(row[3]),
                tuples_fetched=_as_int(row[4]),
            )
            for row in result
        ]

    async def sample_statements(self, session: Session, ordering_column: int = 1) -> list[StatementRecord]:
        """Fetch aggregated statement statistics pre-sorted on a 1-based column.

        Raises SourceUnavailable, without touching the backend, unless the
        feature prober has flagged pg_stat_statements as installed.
        """

        if not session.statements_available:
            raise SourceUnavailable("pg_stat_statements is not installed on this server")
        sql = select_statements(ordering_column, session.server_major)
        result = await self._connector.query(session, sql)
        return _statement_records(result)

    async def sample_current_query(self, session: Session, pid: int) -> str | None:
        """Current query text of one backend, or None when it has gone away."""

        result = await self._connector.query(session, SELECT_CURRENT_QUERY, pid)
        for row in result:
            return None if row[0] is None else str(row[0])
        return None


def _statement_records(result: ResultSet) -> list[StatementRecord]:
    records: list[StatementRecord] = []
    for row in result:
        total_ms = _as_float(row[5]) if len(row) > 5 else 0.0
        average_ms = _as_float(row[6]) if len(row) > 6 else 0.0
        records.append(
            StatementRecord(
                calls=_as_int(row[0]),
                calls_share=min(max(_as_float(row[1]), 0.0), 1.0),
                total_time=str(row[2] or ""),
                average_time=str(row[3] or ""),
                query=str(row[4] or ""),
                total_ms=total_ms,
                average_ms=average_ms,
            )
        )
    return records


def _as_int(value: object) -> int:
    if value is None:
        return 0
    return int(value)  # type: ignore[arg-type]


def _as_float(value: object) -> float:
    if value is None:
        return 0.0
    return float(value)  # type: ignore[arg-type]


__all__ = ["Sampler"]
