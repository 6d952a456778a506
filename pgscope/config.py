"""App configuration loading helpers."""

from __future__ import annotations

from pathlib import Path

import tomllib

from pydantic import BaseModel, Field

from .models import ConnectionProfile, RecordKind
from .ranking import KeyRegistry

CONFIG_FILE = Path.home() / ".config" / "pgscope" / "config.toml"

_REGISTRY = KeyRegistry()


class ConnectionSettings(BaseModel):
    """Connection parameters stored in config.toml."""

    dsn: str | None = None
    host: str | None = None
    port: int | None = None
    database: str | None = None
    user: str | None = None
    password: str | None = None
    connect_timeout: float = Field(default=5.0, gt=0)
    query_timeout: float | None = Field(default=10.0, gt=0)


class DisplaySettings(BaseModel):
    """Ranking selections restored on startup."""

    max_rows: int | None = Field(default=None, ge=0)
    ordering: dict[str, str] = Field(default_factory=dict)
    descending: dict[str, bool] = Field(default_factory=dict)


class AppConfig(BaseModel):
    """Shape of the application configuration file."""

    refresh_interval: float = Field(default=5.0, ge=0.5)
    demo: bool = False
    log_level: str = "WARNING"
    connection: ConnectionSettings = Field(default_factory=ConnectionSettings)
    display: DisplaySettings = Field(default_factory=DisplaySettings)

    def profile(self) -> ConnectionProfile:
        """Connection profile handed to the connector."""

        conn = self.connection
        return ConnectionProfile(
            name="demo" if self.demo else "default",
            dsn=conn.dsn,
            host=conn.host,
            port=conn.port,
            database=conn.database,
            user=conn.user,
            password=conn.password,
        )

    def orderings(self) -> dict[RecordKind, str]:
        return {RecordKind(kind): name for kind, name in self.display.ordering.items()}

    def descending_overrides(self) -> dict[RecordKind, bool]:
        return {RecordKind(kind): flag for kind, flag in self.display.descending.items()}

    def with_ordering(self, kind: RecordKind, name: str, descending: bool) -> AppConfig:
        """Return a copy remembering the ordering selected for one kind."""

        ordering = dict(self.display.ordering)
        ordering[kind.value] = name
        flags = dict(self.display.descending)
        flags[kind.value] = descending
        display = self.display.model_copy(update={"ordering": ordering, "descending": flags})
        return self.model_copy(update={"display": display})

    def with_refresh_interval(self, seconds: float) -> AppConfig:
        return self.model_copy(update={"refresh_interval": max(0.5, seconds)})

    def with_connection(self, **updates: object) -> AppConfig:
        """Return a copy with non-empty connection overrides applied."""

        changes = {key: value for key, value in updates.items() if value is not None}
        if not changes:
            return self
        connection = self.connection.model_copy(update=changes)
        return self.model_copy(update={"connection": connection})


def load_config() -> AppConfig:
    """Load configuration from disk; fall back to defaults if missing."""

    try:
        data = _read_config_file()
    except FileNotFoundError:
        return AppConfig()
    except (tomllib.TOMLDecodeError, OSError):
        return AppConfig()

    return AppConfig(
        refresh_interval=data.get("refresh_interval", AppConfig.model_fields["refresh_interval"].default),
        demo=data.get("demo", AppConfig.model_fields["demo"].default),
        log_level=data.get("log_level", AppConfig.model_fields["log_level"].default),
        connection=data.get("connection", ConnectionSettings()),
        display=data.get("display", DisplaySettings()),
    )


def save_config(config: AppConfig) -> None:
    """Persist configuration to disk, connection credentials included."""

    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    lines: list[str] = [
        f"refresh_interval = {config.refresh_interval}",
        f"demo = {str(config.demo).lower()}",
        f"log_level = {_quote(config.log_level)}",
    ]
    conn = config.connection
    lines.append("")
    lines.append("[connection]")
    for key in ("dsn", "host", "database", "user", "password"):
        value = getattr(conn, key)
        if value:
            lines.append(f"{key} = {_quote(value)}")
    if conn.port is not None:
        lines.append(f"port = {conn.port}")
    lines.append(f"connect_timeout = {conn.connect_timeout}")
    if conn.query_timeout is not None:
        lines.append(f"query_timeout = {conn.query_timeout}")
    display = config.display
    lines.append("")
    lines.append("[display]")
    if display.max_rows is not None:
        lines.append(f"max_rows = {display.max_rows}")
    if display.ordering:
        lines.append("")
        lines.append("[display.ordering]")
        for kind in sorted(display.ordering):
            lines.append(f"{kind} = {_quote(display.ordering[kind])}")
    if display.descending:
        lines.append("")
        lines.append("[display.descending]")
        for kind in sorted(display.descending):
            flag = "true" if display.descending[kind] else "false"
            lines.append(f"{kind} = {flag}")
    CONFIG_FILE.write_text("\n".join(lines) + "\n")


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _read_config_file() -> dict[str, object]:
    with CONFIG_FILE.open("rb") as handle:
        raw = tomllib.load(handle)
    data: dict[str, object] = {}
    if not isinstance(raw, dict):
        return data
    interval = raw.get("refresh_interval")
    if isinstance(interval, (int, float)) and not isinstance(interval, bool) and interval >= 0.5:
        data["refresh_interval"] = float(interval)
    demo = raw.get("demo")
    if isinstance(demo, bool):
        data["demo"] = demo
    log_level = raw.get("log_level")
    if isinstance(log_level, str):
        data["log_level"] = log_level.upper()
    connection = raw.get("connection")
    if isinstance(connection, dict):
        parsed: dict[str, object] = {}
        for key in ("dsn", "host", "database", "user", "password"):
            value = connection.get(key)
            if isinstance(value, str):
                parsed[key] = value
        port = connection.get("port")
        if isinstance(port, int) and not isinstance(port, bool):
            parsed["port"] = port
        for key in ("connect_timeout", "query_timeout"):
            value = connection.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
                parsed[key] = float(value)
        data["connection"] = ConnectionSettings(**parsed)
    display = raw.get("display")
    if isinstance(display, dict):
        state: dict[str, object] = {}
        max_rows = display.get("max_rows")
        if isinstance(max_rows, int) and not isinstance(max_rows, bool) and max_rows >= 0:
            state["max_rows"] = max_rows
        ordering = display.get("ordering")
        if isinstance(ordering, dict):
            state["ordering"] = {
                kind: name
                for kind, name in ordering.items()
                if isinstance(name, str) and _is_known_key(kind, name)
            }
        descending = display.get("descending")
        if isinstance(descending, dict):
            state["descending"] = {
                kind: flag
                for kind, flag in descending.items()
                if isinstance(flag, bool) and _is_known_kind(kind)
            }
        data["display"] = DisplaySettings(**state)
    return data


def _is_known_kind(kind: str) -> bool:
    return kind in {member.value for member in RecordKind}


def _is_known_key(kind: str, name: str) -> bool:
    if not _is_known_kind(kind):
        return False
    return any(key.name == name for key in _REGISTRY.keys_for(RecordKind(kind)))
