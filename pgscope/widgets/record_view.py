"""Tab body rendering one ranked record batch."""

from __future__ import annotations

from textual.app import ComposeResult
from textual.containers import Vertical
from textual.widgets import DataTable, Static

from pgscope.models import RECORD_TYPES, ProcessRecord, Record, RecordKind
from pgscope.refresh import BatchStatus, RecordBatch


class RecordView(Vertical):
    """Caption plus a data table for one record kind."""

    DEFAULT_CSS = """
    RecordView {
        height: 1fr;
    }

    RecordView .view-caption {
        height: 1;
        padding: 0 1;
        color: $text-muted;
    }

    RecordView .view-caption.-degraded {
        color: $warning;
    }

    RecordView DataTable {
        height: 1fr;
    }
    """

    def __init__(self, kind: RecordKind) -> None:
        super().__init__(id=f"view-{kind.value}")
        self.kind = kind
        self._batch: RecordBatch | None = None

    @property
    def batch(self) -> RecordBatch | None:
        return self._batch

    def compose(self) -> ComposeResult:
        yield Static(f"{self.kind.heading}: waiting for the first sample", classes="view-caption")
        yield DataTable(id=f"table-{self.kind.value}", zebra_stripes=True, cursor_type="row")

    def on_mount(self) -> None:
        table = self.query_one(DataTable)
        table.add_columns(*RECORD_TYPES[self.kind].headers)

    def show_batch(self, batch: RecordBatch) -> None:
        """Replace the table rows with the batch, keeping the cursor row if possible."""

        self._batch = batch
        table = self.query_one(DataTable)
        cursor_row = table.cursor_row
        table.clear()
        for record in batch.records:
            table.add_row(*record.cells(), key=_row_key(record))
        if batch.records:
            table.move_cursor(row=min(cursor_row, len(batch.records) - 1))
        caption = self.query_one(".view-caption", Static)
        caption.set_class(batch.status is not BatchStatus.OK, "-degraded")
        caption.update(describe_batch(batch))

    def visible_rows(self) -> int:
        """Rows that fit below the table header."""

        table = self.query_one(DataTable)
        return max(0, table.size.height - 1)


def describe_batch(batch: RecordBatch) -> str:
    title = batch.kind.heading
    if batch.status is BatchStatus.UNAVAILABLE:
        return f"{title}: unavailable ({batch.message})"
    if batch.status is BatchStatus.STALE:
        return f"{title}: no data this cycle ({batch.message})"
    return f"{title}: {len(batch.records)} of {batch.total} {batch.ordering.describe()}"


def _row_key(record: Record) -> str | None:
    if isinstance(record, ProcessRecord):
        return str(record.pid)
    return None


__all__ = ["RecordView", "describe_batch"]
