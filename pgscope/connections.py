"""Connectors owning the single live backend session."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
import logging
import random
import time
from typing import Any, Iterable, Iterator, Protocol, runtime_checkable

import asyncpg

from .errors import BackendConnectionError, QueryError, SessionBusyError
from .models import ConnectionProfile, ResultSet

LOG = logging.getLogger(__name__)

# SQLSTATE classes meaning the link itself is gone: connection exception and
# operator intervention (admin shutdown, crash shutdown, cannot connect now).
_CONNECTION_SQLSTATE_PREFIXES = ("08", "57P")


class Session:
    """Opaque handle to one live backend connection.

    Owned by the connector that created it; everything else borrows it.
    """

    def __init__(self, profile: ConnectionProfile, handle: Any, *, server_major: int | None = None) -> None:
        self.profile = profile
        self.server_major = server_major
        self.opened_at = datetime.now(tz=timezone.utc)
        self.statements_available: bool | None = None
        self._handle = handle
        self._busy = False
        self._closed = False

    @property
    def handle(self) -> Any:
        return self._handle

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def closed(self) -> bool:
        return self._closed

    @contextmanager
    def claim(self) -> Iterator[Any]:
        """Reserve the session for one round trip."""

        if self._closed:
            raise BackendConnectionError(f"Session to '{self.profile.describe()}' is closed")
        if self._busy:
            raise SessionBusyError("Another query is already in flight on this session")
        self._busy = True
        try:
            yield self._handle
        finally:
            self._busy = False

    def mark_closed(self) -> None:
        self._closed = True


@runtime_checkable
class Connector(Protocol):
    """Protocol implemented by session connectors."""

    async def connect(self, profile: ConnectionProfile) -> Session:
        """Open a session or raise BackendConnectionError."""

    async def query(self, session: Session, sql: str, *args: object) -> ResultSet:
        """Run one read-only statement and materialize its rows."""

    async def close(self, session: Session) -> None:
        """Close the session; safe to call twice."""


class AsyncpgConnector:
    """Connector that talks to PostgreSQL via asyncpg."""

    def __init__(self, *, connect_timeout: float = 5.0, query_timeout: float | None = 10.0) -> None:
        self._connect_timeout = connect_timeout
        self._query_timeout = query_timeout

    async def connect(self, profile: ConnectionProfile) -> Session:
        try:
            conn = await asyncpg.connect(**self._connect_kwargs(profile))
        except Exception as exc:
            raise BackendConnectionError(f"Failed to connect to '{profile.describe()}': {exc}") from exc
        version = conn.get_server_version()
        LOG.info(
            "Connected to backend",
            extra={"target": profile.describe(), "server_major": version.major},
        )
        return Session(profile, conn, server_major=version.major)

    async def query(self, session: Session, sql: str, *args: object) -> ResultSet:
        with session.claim() as conn:
            started = time.perf_counter()
            try:
                records = await conn.fetch(sql, *args, timeout=self._query_timeout)
            except asyncpg.PostgresError as exc:
                sqlstate = getattr(exc, "sqlstate", None)
                if sqlstate and sqlstate.startswith(_CONNECTION_SQLSTATE_PREFIXES):
                    LOG.warning("Backend dropped the session", extra={"sqlstate": sqlstate})
                    raise BackendConnectionError(f"Connection lost: {exc}") from exc
                LOG.warning("Query rejected", extra={"sqlstate": sqlstate})
                raise QueryError(sqlstate, str(exc)) from exc
            except (asyncio.TimeoutError, asyncpg.InterfaceError, OSError) as exc:
                LOG.warning("Query failed at the transport level", extra={"error": repr(exc)})
                raise BackendConnectionError(f"Connection lost: {exc or type(exc).__name__}") from exc
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        columns, rows = _materialize(records)
        return ResultSet(columns=columns, rows=rows, elapsed_ms=elapsed_ms)

    async def close(self, session: Session) -> None:
        if session.closed:
            return
        session.mark_closed()
        try:
            await session.handle.close()
        except Exception:  # pragma: no cover - best effort cleanup
            LOG.debug("Ignoring error while closing session", exc_info=True)
        LOG.info("Closed backend session", extra={"target": session.profile.describe()})

    def _connect_kwargs(self, profile: ConnectionProfile) -> dict[str, object]:
        kwargs: dict[str, object] = {}
        if profile.dsn:
            kwargs["dsn"] = profile.dsn
        else:
            kwargs["host"] = profile.host or "localhost"
            if profile.port is not None:
                kwargs["port"] = profile.port
            if profile.user:
                kwargs["user"] = profile.user
            if profile.password:
                kwargs["password"] = profile.password
            if profile.database:
                kwargs["database"] = profile.database
        kwargs["server_settings"] = {"application_name": profile.application_name}
        kwargs.setdefault("timeout", self._connect_timeout)
        return kwargs


def _materialize(records: Iterable[Any]) -> tuple[tuple[str, ...], tuple[tuple[object, ...], ...]]:
    columns: tuple[str, ...] = ()
    rows: list[tuple[object, ...]] = []
    for record in records:
        if hasattr(record, "keys"):
            if not columns:
                columns = tuple(str(key) for key in record.keys())
            rows.append(tuple(record.values()))
        else:
            rows.append(tuple(record))
    return columns, tuple(rows)


DEMO_INDEXES = (
    "accounts_pkey",
    "accounts_email_key",
    "orders_pkey",
    "orders_account_id_idx",
    "orders_created_at_idx",
    "payments_pkey",
    "payments_order_id_idx",
    "sessions_user_id_idx",
)

DEMO_STATEMENTS = (
    "SELECT * FROM accounts WHERE id = $1",
    "SELECT * FROM orders WHERE account_id = $1 ORDER BY created_at DESC LIMIT $2",
    "INSERT INTO payments (order_id, amount) VALUES ($1, $2)",
    "UPDATE accounts SET last_login = now() WHERE id = $1",
    "SELECT count(*) FROM sessions WHERE started_at > $1",
    "BEGIN",
    "COMMIT",
)

DEMO_STATES = ("active", "idle", "idle in transaction")
DEMO_LOCK_MODES = ("AccessShareLock", "RowShareLock", "RowExclusiveLock", "ExclusiveLock")


class DemoConnector:
    """Connector that fabricates plausible counters without a server."""

    def __init__(self, *, statements_enabled: bool = True, seed: int | None = None, server_major: int = 16) -> None:
        self._statements_enabled = statements_enabled
        self._random = random.Random(seed)
        self._server_major = server_major
        self._index_scans = {name: self._random.randint(0, 500) for name in DEMO_INDEXES}
        self._statement_calls = {query: self._random.randint(1, 200) for query in DEMO_STATEMENTS}
        self._statement_ms = {query: self._random.uniform(0.05, 12.0) for query in DEMO_STATEMENTS}

    async def connect(self, profile: ConnectionProfile) -> Session:
        LOG.info("Connected to demo backend", extra={"target": profile.describe()})
        return Session(profile, object(), server_major=self._server_major)

    async def query(self, session: Session, sql: str, *args: object) -> ResultSet:
        with session.claim():
            await asyncio.sleep(0)
            columns, rows = self._answer(sql, args)
        return ResultSet(columns=columns, rows=tuple(rows), elapsed_ms=self._random.randint(1, 8))

    async def close(self, session: Session) -> None:
        session.mark_closed()

    def _answer(self, sql: str, args: tuple[object, ...]) -> tuple[tuple[str, ...], list[tuple[object, ...]]]:
        if "pg_extension" in sql:
            found = self._statements_enabled and args and args[0] == "pg_stat_statements"
            return ("?column?",), [(1,)] if found else []
        if "pg_stat_statements" in sql:
            if not self._statements_enabled:
                raise QueryError("42P01", 'relation "pg_stat_statements" does not exist')
            return self._statements(sql)
        if "pg_stat_user_indexes" in sql:
            return self._indexes()
        if "pg_locks" in sql:
            return self._locks(*args)
        if "pg_stat_activity" in sql and "WHERE pid = $1" in sql:
            pid = args[0] if args else None
            return ("query",), [(DEMO_STATEMENTS[int(pid) % len(DEMO_STATEMENTS)],)] if pid else []
        if "pg_stat_activity" in sql:
            return self._processes()
        raise QueryError("42601", "demo backend does not understand this statement")

    def _indexes(self) -> tuple[tuple[str, ...], list[tuple[object, ...]]]:
        rows: list[tuple[object, ...]] = []
        for offset, name in enumerate(sorted(self._index_scans)):
            self._index_scans[name] += self._random.randint(0, 40)
            scans = self._index_scans[name]
            read = scans * self._random.randint(1, 6)
            rows.append((16384 + offset, name, scans, read, self._random.randint(0, read)))
        return ("indexrelid", "indexrelname", "idx_scan", "idx_tup_read", "idx_tup_fetch"), rows

    def _statements(self, sql: str) -> tuple[tuple[str, ...], list[tuple[object, ...]]]:
        for query in self._statement_calls:
            self._statement_calls[query] += self._random.randint(0, 25)
        total_calls = sum(self._statement_calls.values())
        rows: list[tuple[object, ...]] = []
        for query, calls in self._statement_calls.items():
            total_ms = calls * self._statement_ms[query]
            average_ms = total_ms / calls
            rows.append(
                (
                    calls,
                    calls / total_calls,
                    format_milliseconds(total_ms),
                    format_milliseconds(average_ms),
                    query,
                    total_ms,
                    average_ms,
                )
            )
        column = _order_by_position(sql)
        if column:
            rows.sort(key=lambda row: row[column - 1])
        columns = ("calls", "calls_percentage", "total_time", "average_time", "query", "total_ms", "average_ms")
        return columns, rows

    def _processes(self) -> tuple[tuple[str, ...], list[tuple[object, ...]]]:
        rows: list[tuple[object, ...]] = []
        for pid in range(4100, 4100 + self._random.randint(3, 9)):
            state = self._random.choice(DEMO_STATES)
            query = self._random.choice(DEMO_STATEMENTS)
            wait = "Lock:relation" if self._random.random() < 0.1 else ""
            rows.append(
                (
                    pid,
                    "app",
                    "postgres",
                    "demo-worker",
                    f"10.0.0.{pid % 250}",
                    state,
                    wait,
                    round(self._random.uniform(0, 30), 3),
                    query,
                )
            )
        columns = ("pid", "usename", "datname", "application_name", "client", "state", "wait_event", "duration", "query")
        return columns, rows

    def _locks(self, pid: object = None, mode: object = None) -> tuple[tuple[str, ...], list[tuple[object, ...]]]:
        rows: list[tuple[object, ...]] = []
        for backend in range(4100, 4106):
            for relation in ("accounts", "orders", "payments"):
                if self._random.random() < 0.4:
                    lock_mode = self._random.choice(DEMO_LOCK_MODES)
                    rows.append((backend, "relation", relation, lock_mode, self._random.random() > 0.05))
        rows = [
            row
            for row in rows
            if (pid is None or row[0] == pid) and (mode is None or row[3] == mode)
        ]
        return ("pid", "locktype", "relation", "mode", "granted"), rows


def format_milliseconds(value: float) -> str:
    """Render milliseconds the way to_char(..., 'HH24:MI:SS.MS') does."""

    total_ms = int(round(value))
    hours, remainder = divmod(total_ms, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    seconds, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def _order_by_position(sql: str) -> int | None:
    marker = "ORDER BY "
    index = sql.rfind(marker)
    if index == -1:
        return None
    token = sql[index + len(marker):].split(None, 1)
    if token and token[0].isdigit():
        return int(token[0])
    return None


__all__ = [
    "AsyncpgConnector",
    "Connector",
    "DemoConnector",
    "Session",
    "format_milliseconds",
]
