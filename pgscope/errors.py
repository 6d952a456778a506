"""Exception taxonomy shared by the connector, sampler and refresh loop."""

from __future__ import annotations


class PgscopeError(RuntimeError):
    """Base error for pgscope failures."""


class BackendConnectionError(PgscopeError):
    """Raised when the session is unusable (handshake failure, lost link, timeout)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class QueryError(PgscopeError):
    """Raised when the server rejects a single statement; the session stays usable."""

    def __init__(self, sqlstate: str | None, message: str) -> None:
        detail = f"[{sqlstate}] {message}" if sqlstate else message
        super().__init__(detail)
        self.sqlstate = sqlstate
        self.message = message


class SessionBusyError(PgscopeError):
    """Raised when a second query is issued while one is still in flight."""


class SourceUnavailable(PgscopeError):
    """Raised when a data source is disabled by server configuration."""


class FatalRefreshError(PgscopeError):
    """Raised when the refresh loop cannot recover its session."""


__all__ = [
    "BackendConnectionError",
    "FatalRefreshError",
    "PgscopeError",
    "QueryError",
    "SessionBusyError",
    "SourceUnavailable",
]
