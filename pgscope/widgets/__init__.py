"""Widget library for the Textual UI."""

from __future__ import annotations

from .record_view import RecordView, describe_batch
from .status_bar import StatusBar

__all__ = ["RecordView", "StatusBar", "describe_batch"]
