"""Status bar widget that mirrors refresh loop information."""

from __future__ import annotations

from typing import Callable

from textual.widgets import Static

from pgscope.refresh import BatchStatus, Frame, RefreshLoop


class StatusBar(Static):
    """Compact status strip rendered above Textual's footer."""

    DEFAULT_CSS = """
    StatusBar {
        height: 1;
        padding: 0 1;
        background: $surface-darken-3;
        color: $text;
    }
    """

    def __init__(self, refresh_loop: RefreshLoop, *, target: str) -> None:
        super().__init__("", id="status-bar")
        self._refresh_loop = refresh_loop
        self._target = target
        self._unsubscribe: Callable[[], None] | None = None

    async def on_mount(self) -> None:
        self.update(f"Target: {self._target} | Connecting…")
        self._unsubscribe = self._refresh_loop.subscribe(self._handle_frame)

    def on_unmount(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

    def show_fatal(self, reason: str) -> None:
        self.update(f"Target: {self._target} | Stopped: {reason.splitlines()[0][:100]}")

    def _handle_frame(self, frame: Frame) -> None:
        session = self._refresh_loop.session
        server = f"PG {session.server_major}" if session and session.server_major else "?"
        statements = "on" if session and session.statements_available else "off"
        refreshed = frame.sampled_at.astimezone().strftime("%H:%M:%S")
        degraded = sum(1 for batch in frame.batches.values() if batch.status is BatchStatus.STALE)
        parts = [
            f"Target: {self._target}",
            f"Server: {server}",
            f"pg_stat_statements: {statements}",
            f"Cycle: {frame.cycle}",
            f"Every {self._refresh_loop.interval:g}s",
            f"Refreshed: {refreshed}",
        ]
        if degraded:
            parts.append(f"Stale sources: {degraded}")
        self.update(" | ".join(parts))


__all__ = ["StatusBar"]
