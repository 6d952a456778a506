"""Fixed, read-only introspection SQL issued by the sampler."""

from __future__ import annotations

STATEMENTS_EXTENSION = "pg_stat_statements"

CHECK_FOR_EXTENSION = """
    SELECT 1
    FROM pg_extension
    WHERE extname = $1
"""

SELECT_PROCESSES = """
    SELECT pid,
           coalesce(usename, '') AS usename,
           coalesce(datname, '') AS datname,
           coalesce(application_name, '') AS application_name,
           coalesce(host(client_addr), 'local') AS client,
           coalesce(state, '') AS state,
           coalesce(wait_event_type || ':' || wait_event, '') AS wait_event,
           coalesce(extract(epoch FROM now() - query_start), 0)::float8 AS duration,
           regexp_replace(coalesce(query, ''), E'[\\n\\r]+', ' ', 'g') AS query
    FROM pg_stat_activity
    WHERE pid <> pg_backend_pid()
    ORDER BY pid
"""

SELECT_LOCKS = """
    SELECT l.pid,
           l.locktype,
           coalesce(c.relname, l.relation::text, '') AS relation,
           l.mode,
           l.granted
    FROM pg_locks l
         LEFT JOIN pg_class c ON c.oid = l.relation
    WHERE l.pid IS NOT NULL
      AND ($1::int IS NULL OR l.pid = $1::int)
      AND ($2::text IS NULL OR l.mode = $2::text)
    ORDER BY l.pid, 3
"""

SELECT_CURRENT_QUERY = """
    SELECT query
    FROM pg_stat_activity
    WHERE pid = $1
"""

SELECT_INDEX_STATS = """
    SELECT indexrelid, indexrelname, idx_scan, idx_tup_read,
           idx_tup_fetch
    FROM pg_stat_user_indexes
    ORDER BY indexrelname
"""

# Columns 1-5 are the positions accepted by ORDER BY; 6 and 7 carry the raw
# milliseconds behind the formatted durations.
_SELECT_STATEMENTS = """
    WITH aggs AS (
        SELECT sum(calls) AS calls_total
        FROM pg_stat_statements
    )
    SELECT calls,
           (calls / nullif(calls_total, 0))::float8 AS calls_percentage,
           to_char(INTERVAL '1 milliseconds' * {total},
                   'HH24:MI:SS.MS') AS total_time,
           to_char(INTERVAL '1 milliseconds' * ({total} / nullif(calls, 0)),
                   'HH24:MI:SS.MS') AS average_time,
           regexp_replace(query, E'[\\n\\r]+', ' ', 'g') AS query,
           {total}::float8 AS total_ms,
           ({total} / nullif(calls, 0))::float8 AS average_ms
    FROM pg_stat_statements, aggs
    ORDER BY {column} ASC
"""

STATEMENT_COLUMNS = ("calls", "calls_percentage", "total_time", "average_time", "query")

# pg_stat_statements renamed total_time to total_exec_time in PostgreSQL 13.
EXEC_TIME_RENAMED_IN = 13


def select_statements(ordering_column: int, server_major: int | None) -> str:
    """Render the statement query for a 1-based ordering column and server release."""

    if isinstance(ordering_column, bool) or not isinstance(ordering_column, int):
        raise ValueError(f"Ordering column must be an integer, got {ordering_column!r}")
    if not 1 <= ordering_column <= len(STATEMENT_COLUMNS):
        raise ValueError(
            f"Ordering column must be between 1 and {len(STATEMENT_COLUMNS)}, got {ordering_column}"
        )
    if server_major is None or server_major >= EXEC_TIME_RENAMED_IN:
        total = "total_exec_time"
    else:
        total = "total_time"
    return _SELECT_STATEMENTS.format(total=total, column=ordering_column)


__all__ = [
    "CHECK_FOR_EXTENSION",
    "SELECT_CURRENT_QUERY",
    "SELECT_INDEX_STATS",
    "SELECT_LOCKS",
    "SELECT_PROCESSES",
    "STATEMENTS_EXTENSION",
    "STATEMENT_COLUMNS",
    "select_statements",
]
