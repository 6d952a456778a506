"""Textual application entry point for pgscope."""

from __future__ import annotations

import argparse
import logging
from typing import Callable, Sequence

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.widgets import DataTable, Footer, Header, TabbedContent, TabPane
from textual.logging import TextualHandler

from .config import AppConfig, load_config, save_config
from .connections import AsyncpgConnector, Connector, DemoConnector
from .errors import BackendConnectionError, QueryError
from .models import RecordKind
from .ranking import Direction, KeyRegistry
from .refresh import Frame, RefreshLoop
from .widgets import RecordView, StatusBar

LOG = logging.getLogger(__name__)

_TAB_KINDS = tuple(RecordKind)


def _load_app_config() -> AppConfig:
    """Load configuration with a small wrapper for future overrides."""

    return load_config()


def build_connector(config: AppConfig) -> Connector:
    """Pick the connector matching the configuration."""

    if config.demo:
        return DemoConnector()
    return AsyncpgConnector(
        connect_timeout=config.connection.connect_timeout,
        query_timeout=config.connection.query_timeout,
    )


class PgscopeApp(App[None]):
    """Top-style view of processes, locks, index usage and statements."""

    TITLE = "pgscope"
    CSS = """
    Screen {
        layout: vertical;
    }
    TabbedContent {
        height: 1fr;
    }
    TabPane {
        padding: 0;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("space", "refresh", "Refresh"),
        Binding("ctrl+r", "refresh", "Refresh", show=False),
        ("o", "next_ordering", "Next order"),
        ("r", "reverse", "Reverse"),
        ("1", "show_kind('processes')", "Processes"),
        ("2", "show_kind('locks')", "Locks"),
        ("3", "show_kind('indexes')", "Indexes"),
        ("4", "show_kind('statements')", "Statements"),
    ]

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        file_config: AppConfig | None = None,
        connector: Connector | None = None,
    ) -> None:
        super().__init__()
        self._file_config = file_config or _load_app_config()
        self._config = config or self._file_config
        self._connector = connector or build_connector(self._config)
        self._refresh_loop = RefreshLoop(
            self._connector,
            self._config.profile(),
            registry=KeyRegistry(),
            interval=self._config.refresh_interval,
            window=self._config.display.max_rows,
            orderings=self._config.orderings(),
            descending=self._config.descending_overrides(),
        )
        self._unsubscribers: list[Callable[[], None]] = []
        self._views: dict[RecordKind, RecordView] = {}
        self._status_bar: StatusBar | None = None

    @property
    def refresh_loop(self) -> RefreshLoop:
        """Expose the refresh loop for tests."""

        return self._refresh_loop

    @property
    def config(self) -> AppConfig:
        return self._config

    def compose(self) -> ComposeResult:
        """Compose the root layout."""

        yield Header(show_clock=True)
        with TabbedContent(id="views"):
            for kind in _TAB_KINDS:
                view = RecordView(kind)
                self._views[kind] = view
                with TabPane(kind.heading, id=_tab_id(kind)):
                    yield view
        self._status_bar = StatusBar(self._refresh_loop, target=self._config.profile().describe())
        yield self._status_bar
        yield Footer()

    async def on_mount(self) -> None:
        self._unsubscribers.append(self._refresh_loop.subscribe(self._handle_frame))
        self._unsubscribers.append(self._refresh_loop.on_fatal(self._handle_fatal))
        self.call_after_refresh(self._sync_window)
        self.run_worker(self._refresh_loop.run(), name="refresh-loop", exclusive=True)

    def on_resize(self) -> None:
        self.call_after_refresh(self._sync_window)

    async def action_quit(self) -> None:
        """Let the in-flight state finish, close the session, then exit."""

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self._refresh_loop.stop()
        await self.workers.wait_for_complete()
        self.exit()

    def action_refresh(self) -> None:
        self._refresh_loop.request_refresh()

    def action_next_ordering(self) -> None:
        kind = self.active_kind
        ordering = self._refresh_loop.cycle_ordering(kind)
        self._remember_ordering(kind)
        self.notify(f"{kind.heading}: {ordering.describe()}", severity="information")
        self._refresh_loop.request_refresh()

    def action_reverse(self) -> None:
        kind = self.active_kind
        ordering = self._refresh_loop.toggle_direction(kind)
        self._remember_ordering(kind)
        self.notify(f"{kind.heading}: {ordering.describe()}", severity="information")
        self._refresh_loop.request_refresh()

    def action_show_kind(self, name: str) -> None:
        self.query_one(TabbedContent).active = _tab_id(RecordKind(name))

    @property
    def active_kind(self) -> RecordKind:
        active = self.query_one(TabbedContent).active
        for kind in _TAB_KINDS:
            if active == _tab_id(kind):
                return kind
        return _TAB_KINDS[0]

    def on_data_table_row_selected(self, event: DataTable.RowSelected) -> None:
        if event.data_table.id != f"table-{RecordKind.PROCESSES.value}":
            return
        pid_value = event.row_key.value if event.row_key is not None else None
        if not pid_value:
            return
        self.run_worker(
            self._show_current_query(int(pid_value)),
            name="current-query",
            group="current-query",
            exclusive=True,
        )

    async def _show_current_query(self, pid: int) -> None:
        try:
            query = await self._refresh_loop.sample_current_query(pid)
        except (QueryError, BackendConnectionError) as exc:
            self.notify(f"Could not read query of {pid}: {exc}", severity="error")
            return
        self.notify(query or "(backend has exited)", title=f"Backend {pid}", timeout=10)

    def _handle_frame(self, frame: Frame) -> None:
        for kind, batch in frame.batches.items():
            view = self._views.get(kind)
            if view is not None and view.is_mounted:
                view.show_batch(batch)

    def _handle_fatal(self, reason: str) -> None:
        LOG.error("Refresh loop gave up", extra={"reason": reason})
        if self._status_bar is not None:
            self._status_bar.show_fatal(reason)
        self.exit(return_code=1, message=f"pgscope: {reason}")

    def _sync_window(self) -> None:
        view = self._views.get(self.active_kind)
        if view is None or not view.is_mounted:
            return
        rows = view.visible_rows()
        cap = self._config.display.max_rows
        if rows <= 0:
            rows = cap
        elif cap is not None:
            rows = min(rows, cap)
        self._refresh_loop.set_window(rows)

    def _remember_ordering(self, kind: RecordKind) -> None:
        ordering = self._refresh_loop.ordering(kind)
        descending = ordering.direction is Direction.DESCENDING
        self._config = self._config.with_ordering(kind, ordering.key.name, descending)
        # Command line overrides stay out of the file.
        self._file_config = self._file_config.with_ordering(kind, ordering.key.name, descending)
        try:
            save_config(self._file_config)
        except OSError:
            LOG.exception("Failed to persist ordering", extra={"kind": kind.value})


def _tab_id(kind: RecordKind) -> str:
    return f"tab-{kind.value}"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pgscope",
        description="Live top-style view of a PostgreSQL server.",
        add_help=False,
    )
    parser.add_argument("--help", action="help", help="show this help message and exit")
    parser.add_argument("-h", "--host", help="database server host")
    parser.add_argument("-p", "--port", type=int, help="database server port")
    parser.add_argument("-U", "--user", help="database user name")
    parser.add_argument("-d", "--dbname", help="database name to connect to")
    parser.add_argument("-s", "--delay", type=float, help="seconds between refreshes")
    parser.add_argument("-n", "--rows", type=int, help="maximum rows shown per view")
    parser.add_argument(
        "-o",
        "--order",
        action="append",
        default=[],
        metavar="KIND=KEY",
        help="initial ordering, e.g. indexes=idx_tup_fetch (repeatable)",
    )
    parser.add_argument("--demo", action="store_true", help="use synthetic counters instead of a server")
    parser.add_argument("--log-level", help="logging level routed to the Textual console")
    return parser


def config_from_args(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    """Apply command line overrides on top of the file configuration."""

    config = config.with_connection(host=args.host, port=args.port, user=args.user, database=args.dbname)
    if args.delay is not None:
        config = config.with_refresh_interval(args.delay)
    if args.rows is not None:
        display = config.display.model_copy(update={"max_rows": max(0, args.rows)})
        config = config.model_copy(update={"display": display})
    registry = KeyRegistry()
    for item in args.order:
        kind_name, _, key_name = item.partition("=")
        kind = RecordKind(kind_name)
        key = registry.get(kind, key_name)
        config = config.with_ordering(kind, key.name, key.default_direction is Direction.DESCENDING)
    if args.demo:
        config = config.model_copy(update={"demo": True})
    if args.log_level:
        config = config.model_copy(update={"log_level": args.log_level.upper()})
    return config


def configure_logging(level: str) -> None:
    """Route log records into Textual's devtools console."""

    logging.basicConfig(level=getattr(logging, level, logging.WARNING), handlers=[TextualHandler()])


def main(argv: Sequence[str] | None = None) -> None:
    """Invoke the Textual application."""

    parser = build_parser()
    args = parser.parse_args(argv)
    file_config = _load_app_config()
    try:
        config = config_from_args(file_config, args)
    except (KeyError, ValueError) as exc:
        parser.error(str(exc))
    configure_logging(config.log_level)
    PgscopeApp(config, file_config=file_config).run()


if __name__ == "__main__":
    main()
