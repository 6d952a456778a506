"""Tests for the refresh loop state machine."""

from __future__ import annotations

from typing import Callable

import pytest

from pgscope.connections import Session
from pgscope.errors import BackendConnectionError, FatalRefreshError, QueryError
from pgscope.models import ConnectionProfile, RecordKind, ResultSet
from pgscope.ranking import Direction
from pgscope.refresh import BatchStatus, Frame, LoopState, RefreshLoop


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


PROCESS_ROWS = [
    (4101, "app", "postgres", "api", "10.0.0.5", "active", "", 0.5, "SELECT 1"),
    (4102, "app", "postgres", "api", "10.0.0.6", "active", "", 9.0, "SELECT 2"),
]
LOCK_ROWS = [(4101, "relation", "accounts", "AccessShareLock", True)]
INDEX_ROWS = [
    (16390, "a_idx", 5, 10, 1),
    (16391, "b_idx", 50, 20, 30),
    (16392, "c_idx", 1, 30, 2),
]
STATEMENT_ROWS = [
    (30, 0.6, "00:00:01.500", "00:00:00.050", "SELECT 1", 1500.0, 50.0),
    (20, 0.4, "00:00:04.000", "00:00:00.200", "SELECT 2", 4000.0, 200.0),
]


class _ScriptedConnector:
    """Answers by SQL marker; a callable response is invoked per call."""

    def __init__(self, responses: dict[str, object] | None = None, *, statements: bool = True) -> None:
        self.responses: dict[str, object] = {
            "pg_extension": [(1,)] if statements else [],
            "pg_locks": LOCK_ROWS,
            "pg_stat_user_indexes": INDEX_ROWS,
            "pg_stat_statements": STATEMENT_ROWS,
            "pg_stat_activity": PROCESS_ROWS,
        }
        self.responses.update(responses or {})
        self.calls: list[str] = []
        self.connect_errors: list[BackendConnectionError] = []
        self.sessions: list[Session] = []

    async def connect(self, profile: ConnectionProfile) -> Session:
        if self.connect_errors:
            raise self.connect_errors.pop(0)
        session = Session(profile, object(), server_major=16)
        self.sessions.append(session)
        return session

    async def query(self, session: Session, sql: str, *args: object) -> ResultSet:
        with session.claim():
            self.calls.append(sql)
            for marker, response in self.responses.items():
                if marker in sql:
                    if callable(response):
                        response = response()
                    if isinstance(response, Exception):
                        raise response
                    return ResultSet(columns=(), rows=tuple(tuple(row) for row in response))
        return ResultSet(columns=(), rows=())

    async def close(self, session: Session) -> None:
        session.mark_closed()


def _loop(connector: _ScriptedConnector, **kwargs) -> RefreshLoop:
    return RefreshLoop(connector, ConnectionProfile(name="test"), **kwargs)


def _failing_once(error: Exception, rows: list[tuple]) -> Callable[[], object]:
    state = {"failed": False}

    def _respond() -> object:
        if not state["failed"]:
            state["failed"] = True
            return error
        return rows

    return _respond


@pytest.mark.anyio
async def test_cycle_ranks_every_source() -> None:
    loop = _loop(_ScriptedConnector())
    await loop.start()

    frame = await loop.run_cycle()

    assert frame is not None and frame.cycle == 1
    indexes = frame.batch(RecordKind.INDEXES)
    assert indexes.status is BatchStatus.OK
    assert [record.scans for record in indexes.records] == [50, 5, 1]
    assert indexes.columns == ("OID", "Index", "Scans", "Tuples read", "Tuples fetched")
    assert [record.pid for record in frame.batch(RecordKind.PROCESSES).records] == [4102, 4101]
    assert [record.calls for record in frame.batch(RecordKind.STATEMENTS).records] == [30, 20]
    assert loop.state is LoopState.IDLE


@pytest.mark.anyio
async def test_statements_unavailable_renders_placeholder_and_keeps_running() -> None:
    connector = _ScriptedConnector(statements=False)
    loop = _loop(connector)
    await loop.start()

    first = await loop.run_cycle()
    second = await loop.run_cycle()

    for frame in (first, second):
        assert frame is not None
        batch = frame.batch(RecordKind.STATEMENTS)
        assert batch.status is BatchStatus.UNAVAILABLE
        assert batch.records == ()
        assert "pg_stat_statements" in (batch.message or "")
        assert frame.batch(RecordKind.INDEXES).status is BatchStatus.OK
    assert not any("FROM pg_stat_statements" in sql for sql in connector.calls)
    assert loop.state is LoopState.IDLE


@pytest.mark.anyio
async def test_rejected_locks_query_leaves_other_sources_rendered() -> None:
    connector = _ScriptedConnector({"pg_locks": QueryError("42501", "permission denied for pg_locks")})
    loop = _loop(connector)
    await loop.start()

    frame = await loop.run_cycle()

    assert frame is not None
    locks = frame.batch(RecordKind.LOCKS)
    assert locks.status is BatchStatus.STALE
    assert "permission denied" in (locks.message or "")
    assert frame.batch(RecordKind.INDEXES).status is BatchStatus.OK
    assert len(frame.batch(RecordKind.INDEXES).records) == 3
    assert frame.batch(RecordKind.PROCESSES).status is BatchStatus.OK
    assert len(frame.batch(RecordKind.PROCESSES).records) == 2
    assert await loop.run_cycle() is not None


@pytest.mark.anyio
async def test_rejected_query_passes_through_error_state_without_stopping() -> None:
    connector = _ScriptedConnector({"pg_locks": QueryError("42501", "permission denied for pg_locks")})
    loop = _loop(connector)
    seen: list[LoopState] = []

    def _indexes_recording_state() -> object:
        seen.append(loop.state)
        return INDEX_ROWS

    connector.responses["pg_stat_user_indexes"] = _indexes_recording_state
    await loop.start()

    frame = await loop.run_cycle()

    assert seen == [LoopState.ERROR]
    assert frame is not None
    assert frame.batch(RecordKind.INDEXES).status is BatchStatus.OK
    assert loop.state is LoopState.IDLE
    assert loop.fatal_error is None


@pytest.mark.anyio
async def test_window_truncates_after_ranking() -> None:
    loop = _loop(_ScriptedConnector(), window=2)
    await loop.start()

    frame = await loop.run_cycle()

    indexes = frame.batch(RecordKind.INDEXES)
    assert [record.scans for record in indexes.records] == [50, 5]
    assert indexes.total == 3
    loop.set_window(0)
    assert (await loop.run_cycle()).batch(RecordKind.INDEXES).records == ()


@pytest.mark.anyio
async def test_ordering_change_waits_for_next_cycle() -> None:
    loop = _loop(_ScriptedConnector())
    await loop.start()
    await loop.run_cycle()

    selected = loop.select_ordering(RecordKind.INDEXES, "idx_tup_read")

    assert loop.ordering(RecordKind.INDEXES) == selected
    assert loop.applied_ordering(RecordKind.INDEXES).key.name == "idx_scan"
    frame = await loop.run_cycle()
    indexes = frame.batch(RecordKind.INDEXES)
    assert indexes.ordering.key.name == "idx_tup_read"
    assert [record.tuples_read for record in indexes.records] == [30, 20, 10]


@pytest.mark.anyio
async def test_ordering_change_never_interrupts_an_in_flight_cycle() -> None:
    connector = _ScriptedConnector()
    loop = _loop(connector)

    def _indexes_and_reselect() -> object:
        loop.select_ordering(RecordKind.INDEXES, "name")
        return INDEX_ROWS

    connector.responses["pg_stat_user_indexes"] = _indexes_and_reselect
    await loop.start()

    frame = await loop.run_cycle()

    assert frame.batch(RecordKind.INDEXES).ordering.key.name == "idx_scan"
    assert loop.applied_ordering(RecordKind.INDEXES).key.name == "idx_scan"
    following = await loop.run_cycle()
    assert [record.name for record in following.batch(RecordKind.INDEXES).records] == ["a_idx", "b_idx", "c_idx"]


@pytest.mark.anyio
async def test_toggle_direction_and_index_selection() -> None:
    loop = _loop(_ScriptedConnector())
    await loop.start()

    loop.select_ordering(RecordKind.INDEXES, 0)
    loop.toggle_direction(RecordKind.INDEXES)
    frame = await loop.run_cycle()

    indexes = frame.batch(RecordKind.INDEXES)
    assert indexes.ordering.direction is Direction.ASCENDING
    assert [record.scans for record in indexes.records] == [1, 5, 50]


@pytest.mark.anyio
async def test_statement_ordering_drives_sql_pre_sort() -> None:
    connector = _ScriptedConnector()
    loop = _loop(connector, orderings={RecordKind.STATEMENTS: "average_time"})
    await loop.start()

    frame = await loop.run_cycle()

    statement_sql = [sql for sql in connector.calls if "FROM pg_stat_statements" in sql]
    assert "ORDER BY 4 ASC" in statement_sql[-1]
    assert [record.average_ms for record in frame.batch(RecordKind.STATEMENTS).records] == [200.0, 50.0]


@pytest.mark.anyio
async def test_initial_direction_overrides() -> None:
    loop = _loop(_ScriptedConnector(), descending={RecordKind.INDEXES: False})
    await loop.start()

    frame = await loop.run_cycle()

    assert [record.scans for record in frame.batch(RecordKind.INDEXES).records] == [1, 5, 50]


@pytest.mark.anyio
async def test_connection_loss_reconnects_once_and_continues() -> None:
    connector = _ScriptedConnector()
    connector.responses["pg_stat_user_indexes"] = _failing_once(BackendConnectionError("server closed the connection"), INDEX_ROWS)
    loop = _loop(connector)
    await loop.start()
    first_session = loop.session

    frame = await loop.run_cycle()

    assert frame is not None
    assert all(batch.status is BatchStatus.STALE for batch in frame.batches.values())
    assert first_session is not None and first_session.closed
    assert loop.session is not first_session
    assert loop.session.statements_available is True
    assert len(connector.sessions) == 2
    healthy = await loop.run_cycle()
    assert healthy.batch(RecordKind.INDEXES).status is BatchStatus.OK


@pytest.mark.anyio
async def test_failed_reconnect_is_fatal() -> None:
    connector = _ScriptedConnector({"pg_stat_activity": BackendConnectionError("server closed the connection")})
    loop = _loop(connector)
    reasons: list[str] = []
    loop.on_fatal(reasons.append)
    await loop.start()
    connector.connect_errors.append(BackendConnectionError("could not connect to server"))

    with pytest.raises(FatalRefreshError):
        await loop.run_cycle()

    assert loop.state is LoopState.STOPPED
    assert reasons == ["could not connect to server"]
    assert loop.fatal_error == "could not connect to server"
    with pytest.raises(FatalRefreshError):
        await loop.run_cycle()


@pytest.mark.anyio
async def test_repeated_connection_loss_after_reconnect_is_fatal() -> None:
    connector = _ScriptedConnector({"pg_stat_activity": BackendConnectionError("server closed the connection")})
    loop = _loop(connector)
    await loop.start()

    first = await loop.run_cycle()
    assert first is not None

    with pytest.raises(FatalRefreshError):
        await loop.run_cycle()
    assert loop.state is LoopState.STOPPED
    assert len(connector.sessions) == 2


@pytest.mark.anyio
async def test_probe_rejection_marks_statements_unavailable() -> None:
    connector = _ScriptedConnector({"pg_extension": QueryError("42501", "permission denied for pg_extension")})
    loop = _loop(connector)

    await loop.start()
    frame = await loop.run_cycle()

    assert frame.batch(RecordKind.STATEMENTS).status is BatchStatus.UNAVAILABLE


@pytest.mark.anyio
async def test_subscribers_receive_frames_and_latest_on_subscribe() -> None:
    loop = _loop(_ScriptedConnector())
    seen: list[Frame] = []
    unsubscribe = loop.subscribe(seen.append)
    await loop.start()

    await loop.run_cycle()
    late: list[Frame] = []
    loop.subscribe(late.append)
    unsubscribe()
    await loop.run_cycle()

    assert [frame.cycle for frame in seen] == [1]
    assert [frame.cycle for frame in late] == [1, 2]


@pytest.mark.anyio
async def test_run_stops_between_states_and_closes_session() -> None:
    connector = _ScriptedConnector()
    loop = _loop(connector, interval=60)
    frames: list[Frame] = []

    def _collect(frame: Frame) -> None:
        frames.append(frame)
        if len(frames) == 2:
            loop.stop()
        else:
            loop.request_refresh()

    loop.subscribe(_collect)
    await loop.run()

    assert len(frames) == 2
    assert loop.state is LoopState.STOPPED
    assert connector.sessions[0].closed


@pytest.mark.anyio
async def test_run_reports_fatal_when_startup_connection_fails() -> None:
    connector = _ScriptedConnector()
    connector.connect_errors.append(BackendConnectionError("password authentication failed"))
    loop = _loop(connector)
    reasons: list[str] = []
    loop.on_fatal(reasons.append)

    await loop.run()

    assert reasons == ["password authentication failed"]
    assert loop.state is LoopState.STOPPED


@pytest.mark.anyio
async def test_stop_request_during_sampling_skips_rendering() -> None:
    connector = _ScriptedConnector()
    loop = _loop(connector)

    def _rows_then_stop() -> object:
        loop.stop()
        return INDEX_ROWS

    connector.responses["pg_stat_user_indexes"] = _rows_then_stop
    seen: list[Frame] = []
    loop.subscribe(seen.append)
    await loop.start()

    assert await loop.run_cycle() is None
    assert seen == []
    assert any("pg_stat_statements" in sql for sql in connector.calls)


@pytest.mark.anyio
async def test_current_query_uses_the_loop_session() -> None:
    connector = _ScriptedConnector({"WHERE pid = $1": [("SELECT pg_sleep(5)",)]})
    connector.responses = {"WHERE pid = $1": connector.responses.pop("WHERE pid = $1"), **connector.responses}
    loop = _loop(connector)

    assert await loop.sample_current_query(4101) is None
    await loop.start()
    assert await loop.sample_current_query(4101) == "SELECT pg_sleep(5)"
