"""Feature probing for optional server extensions."""

from __future__ import annotations

import logging

from .connections import Connector, Session
from .queries import CHECK_FOR_EXTENSION, STATEMENTS_EXTENSION

LOG = logging.getLogger(__name__)


async def probe_statement_statistics(connector: Connector, session: Session) -> bool:
    """Return whether pg_stat_statements is registered, caching the answer on the session.

    Extension state cannot change without a server restart, so the flag lives as
    long as the session does; a reconnect yields a fresh session and a new probe.
    """

    if session.statements_available is not None:
        return session.statements_available
    result = await connector.query(session, CHECK_FOR_EXTENSION, STATEMENTS_EXTENSION)
    available = len(result) > 0
    session.statements_available = available
    if not available:
        LOG.info("Statement statistics disabled", extra={"extension": STATEMENTS_EXTENSION})
    return available


__all__ = ["probe_statement_statistics"]
