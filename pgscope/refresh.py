"""Refresh loop driving sampling, ranking and display handoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Mapping, Sequence

from .connections import Connector, Session
from .errors import BackendConnectionError, FatalRefreshError, QueryError, SourceUnavailable
from .features import probe_statement_statistics
from .models import RECORD_TYPES, ConnectionProfile, Record, RecordKind
from .ranking import Direction, KeyRegistry, OrderingKey, rank, truncate
from .sampler import Sampler

LOG = logging.getLogger(__name__)

MIN_INTERVAL = 0.5


class LoopState(str, Enum):
    """Phases of one refresh cycle."""

    IDLE = "idle"
    SAMPLING = "sampling"
    RANKING = "ranking"
    RENDERING = "rendering"
    ERROR = "error"
    STOPPED = "stopped"


class BatchStatus(str, Enum):
    OK = "ok"
    STALE = "stale"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class Ordering:
    """Ordering key plus direction selected for one record kind."""

    key: OrderingKey
    direction: Direction

    @classmethod
    def natural(cls, key: OrderingKey) -> Ordering:
        return cls(key=key, direction=key.default_direction)

    def describe(self) -> str:
        arrow = "desc" if self.direction is Direction.DESCENDING else "asc"
        return f"{self.key.label} ({arrow})"


@dataclass(frozen=True, slots=True)
class RecordBatch:
    """Ranked, already-truncated records of one kind handed to the display."""

    kind: RecordKind
    columns: tuple[str, ...]
    records: tuple[Record, ...]
    total: int
    ordering: Ordering
    status: BatchStatus = BatchStatus.OK
    message: str | None = None


@dataclass(frozen=True, slots=True)
class Frame:
    """Everything rendered for one cycle."""

    cycle: int
    sampled_at: datetime
    batches: Mapping[RecordKind, RecordBatch] = field(default_factory=dict)

    def batch(self, kind: RecordKind) -> RecordBatch:
        return self.batches[kind]


FrameListener = Callable[[Frame], None]
FatalListener = Callable[[str], None]


class RefreshLoop:
    """Owns the session and the ordering selections; the only issuer of queries."""

    def __init__(
        self,
        connector: Connector,
        profile: ConnectionProfile,
        *,
        registry: KeyRegistry | None = None,
        interval: float = 5.0,
        window: int | None = None,
        kinds: Sequence[RecordKind] = tuple(RecordKind),
        orderings: Mapping[RecordKind, str | int] | None = None,
        descending: Mapping[RecordKind, bool] | None = None,
        lock_pid: int | None = None,
        lock_mode: str | None = None,
    ) -> None:
        self._connector = connector
        self._profile = profile
        self._sampler = Sampler(connector)
        self._registry = registry or KeyRegistry()
        self._interval = max(MIN_INTERVAL, interval)
        self._window = window
        self._kinds = tuple(kinds)
        self._lock_pid = lock_pid
        self._lock_mode = lock_mode
        self._orderings: dict[RecordKind, Ordering] = {}
        for kind in self._kinds:
            selector = (orderings or {}).get(kind)
            key = self._registry.resolve(kind, selector) if selector is not None else self._registry.default_for(kind)
            ordering = Ordering.natural(key)
            if descending and kind in descending:
                ordering = Ordering(key, Direction.DESCENDING if descending[kind] else Direction.ASCENDING)
            self._orderings[kind] = ordering
        self._pending: dict[RecordKind, Ordering] = {}
        self._session: Session | None = None
        self._state = LoopState.IDLE
        self._cycle = 0
        self._cycle_lock = asyncio.Lock()
        self._refresh_requested = asyncio.Event()
        self._stop_requested = False
        self._awaiting_healthy_cycle = False
        self._fatal_error: str | None = None
        self._listeners: set[FrameListener] = set()
        self._fatal_listeners: set[FatalListener] = set()
        self._last_frame: Frame | None = None

    @property
    def state(self) -> LoopState:
        return self._state

    @property
    def session(self) -> Session | None:
        """Borrowed view of the current session."""

        return self._session

    @property
    def registry(self) -> KeyRegistry:
        return self._registry

    @property
    def kinds(self) -> tuple[RecordKind, ...]:
        return self._kinds

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def window(self) -> int | None:
        return self._window

    @property
    def last_frame(self) -> Frame | None:
        return self._last_frame

    @property
    def fatal_error(self) -> str | None:
        return self._fatal_error

    def ordering(self, kind: RecordKind) -> Ordering:
        """Ordering that the next cycle will use (pending change included)."""

        return self._pending.get(kind, self._orderings[kind])

    def applied_ordering(self, kind: RecordKind) -> Ordering:
        return self._orderings[kind]

    def select_ordering(self, kind: RecordKind, selector: str | int | OrderingKey) -> Ordering:
        """Queue a key change; it takes effect when the next cycle starts."""

        key = selector if isinstance(selector, OrderingKey) else self._registry.resolve(kind, selector)
        if key.kind is not kind:
            raise ValueError(f"Ordering key '{key.name}' does not apply to {kind.value}")
        current = self.ordering(kind)
        ordering = Ordering(key, current.direction if key == current.key else key.default_direction)
        self._pending[kind] = ordering
        return ordering

    def cycle_ordering(self, kind: RecordKind) -> Ordering:
        return self.select_ordering(kind, self._registry.next_after(self.ordering(kind).key))

    def toggle_direction(self, kind: RecordKind) -> Ordering:
        current = self.ordering(kind)
        ordering = Ordering(current.key, current.direction.flipped())
        self._pending[kind] = ordering
        return ordering

    def set_window(self, rows: int | None) -> None:
        if rows is not None and rows < 0:
            raise ValueError(f"Window size must not be negative, got {rows}")
        self._window = rows

    def set_interval(self, seconds: float) -> None:
        self._interval = max(MIN_INTERVAL, seconds)

    def subscribe(self, listener: FrameListener) -> Callable[[], None]:
        """Subscribe to rendered frames; returns an unsubscribe handle."""

        self._listeners.add(listener)
        if self._last_frame:
            listener(self._last_frame)

        def _unsubscribe() -> None:
            self._listeners.discard(listener)

        return _unsubscribe

    def on_fatal(self, listener: FatalListener) -> Callable[[], None]:
        self._fatal_listeners.add(listener)

        def _unsubscribe() -> None:
            self._fatal_listeners.discard(listener)

        return _unsubscribe

    def request_refresh(self) -> None:
        """Skip the rest of the current wait and sample immediately."""

        self._refresh_requested.set()

    def stop(self) -> None:
        """Stop after the current state completes; in-flight queries finish."""

        self._stop_requested = True
        self._refresh_requested.set()

    async def start(self) -> Session:
        """Open the session and probe optional features."""

        async with self._cycle_lock:
            return await self._open()

    async def _open(self) -> Session:
        if self._session is not None and not self._session.closed:
            return self._session
        self._session = await self._connector.connect(self._profile)
        await self._probe()
        return self._session

    async def run(self) -> None:
        """Run cycles until stopped or until the session cannot be recovered."""

        try:
            if self._session is None:
                try:
                    await self.start()
                except BackendConnectionError as exc:
                    self._fail(exc)
            while not self._stop_requested:
                await self.run_cycle()
                if self._stop_requested:
                    break
                await self._wait_for_tick()
        except FatalRefreshError:
            LOG.error("Refresh loop stopped", extra={"reason": self._fatal_error})
        finally:
            await self.close()

    async def run_cycle(self) -> Frame | None:
        """Run one Idle -> Sampling -> Ranking -> Rendering -> Idle cycle.

        Returns None when a stop request lands between two states.
        """

        async with self._cycle_lock:
            if self._state is LoopState.STOPPED:
                raise FatalRefreshError(self._fatal_error or "Refresh loop is stopped")
            if self._session is None:
                try:
                    await self._open()
                except BackendConnectionError as exc:
                    self._fail(exc)
            self._apply_pending()
            self._set_state(LoopState.SAMPLING)
            try:
                samples, failures = await self._sample_all()
            except BackendConnectionError as exc:
                self._set_state(LoopState.ERROR)
                await self._recover(exc)
                samples = {}
                failures = {
                    kind: self._placeholder(kind, BatchStatus.STALE, f"Reconnected after connection loss: {exc.reason}")
                    for kind in self._kinds
                }
            else:
                self._awaiting_healthy_cycle = False
            if self._stop_requested:
                self._set_state(LoopState.IDLE)
                return None
            self._set_state(LoopState.RANKING)
            batches = self._rank_all(samples, failures)
            if self._stop_requested:
                self._set_state(LoopState.IDLE)
                return None
            self._set_state(LoopState.RENDERING)
            self._cycle += 1
            frame = Frame(cycle=self._cycle, sampled_at=datetime.now(tz=timezone.utc), batches=batches)
            self._last_frame = frame
            self._notify(frame)
            self._set_state(LoopState.IDLE)
            return frame

    async def sample_current_query(self, pid: int) -> str | None:
        """Current query of one backend, issued under the cycle lock."""

        async with self._cycle_lock:
            if self._session is None:
                return None
            return await self._sampler.sample_current_query(self._session, pid)

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            await self._connector.close(session)
        self._set_state(LoopState.STOPPED)

    async def _sample_all(self) -> tuple[dict[RecordKind, list[Record]], dict[RecordKind, RecordBatch]]:
        samples: dict[RecordKind, list[Record]] = {}
        failures: dict[RecordKind, RecordBatch] = {}
        for kind in self._kinds:
            try:
                samples[kind] = await self._sample(kind)
            except SourceUnavailable as exc:
                failures[kind] = self._placeholder(kind, BatchStatus.UNAVAILABLE, str(exc))
            except QueryError as exc:
                LOG.warning(
                    "Sample rejected; keeping the cycle for other sources",
                    extra={"kind": kind.value, "sqlstate": exc.sqlstate},
                )
                # The rest of the pass still samples; ranking follows as usual.
                self._set_state(LoopState.ERROR)
                failures[kind] = self._placeholder(kind, BatchStatus.STALE, str(exc))
        return samples, failures

    async def _sample(self, kind: RecordKind) -> list[Record]:
        assert self._session is not None
        session = self._session
        if kind is RecordKind.PROCESSES:
            return list(await self._sampler.sample_processes(session))
        if kind is RecordKind.LOCKS:
            return list(await self._sampler.sample_locks(session, self._lock_pid, self._lock_mode))
        if kind is RecordKind.INDEXES:
            return list(await self._sampler.sample_index_stats(session))
        column = self._orderings[kind].key.statement_column or 1
        return list(await self._sampler.sample_statements(session, column))

    def _rank_all(
        self,
        samples: Mapping[RecordKind, list[Record]],
        failures: Mapping[RecordKind, RecordBatch],
    ) -> dict[RecordKind, RecordBatch]:
        batches: dict[RecordKind, RecordBatch] = {}
        for kind in self._kinds:
            if kind in failures:
                batches[kind] = failures[kind]
                continue
            ordering = self._orderings[kind]
            ranked = rank(samples[kind], ordering.key, ordering.direction)
            batches[kind] = RecordBatch(
                kind=kind,
                columns=_headers(kind),
                records=tuple(truncate(ranked, self._window)),
                total=len(ranked),
                ordering=ordering,
            )
        return batches

    def _placeholder(self, kind: RecordKind, status: BatchStatus, message: str) -> RecordBatch:
        return RecordBatch(
            kind=kind,
            columns=_headers(kind),
            records=(),
            total=0,
            ordering=self._orderings[kind],
            status=status,
            message=message,
        )

    async def _probe(self) -> None:
        assert self._session is not None
        try:
            await probe_statement_statistics(self._connector, self._session)
        except QueryError as exc:
            LOG.warning("Feature probe rejected; treating statements as unavailable", extra={"error": str(exc)})
            self._session.statements_available = False

    async def _recover(self, exc: BackendConnectionError) -> None:
        if self._awaiting_healthy_cycle:
            self._fail(exc)
        LOG.warning("Connection lost; reconnecting once", extra={"reason": exc.reason})
        session, self._session = self._session, None
        if session is not None:
            await self._connector.close(session)
        try:
            await self._open()
        except BackendConnectionError as retry_exc:
            self._fail(retry_exc)
        self._awaiting_healthy_cycle = True

    def _fail(self, exc: BackendConnectionError) -> None:
        self._fatal_error = exc.reason
        self._set_state(LoopState.STOPPED)
        for listener in tuple(self._fatal_listeners):
            listener(exc.reason)
        raise FatalRefreshError(exc.reason) from exc

    def _apply_pending(self) -> None:
        if self._pending:
            self._orderings.update(self._pending)
            self._pending.clear()

    async def _wait_for_tick(self) -> None:
        try:
            await asyncio.wait_for(self._refresh_requested.wait(), timeout=self._interval)
        except asyncio.TimeoutError:
            pass
        self._refresh_requested.clear()

    def _set_state(self, state: LoopState) -> None:
        self._state = state

    def _notify(self, frame: Frame) -> None:
        for listener in tuple(self._listeners):
            listener(frame)


def _headers(kind: RecordKind) -> tuple[str, ...]:
    return RECORD_TYPES[kind].headers


__all__ = [
    "BatchStatus",
    "Frame",
    "LoopState",
    "Ordering",
    "RecordBatch",
    "RefreshLoop",
]
