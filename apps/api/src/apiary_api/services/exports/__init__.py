"""Partner export batching, file layout and calendar."""

from .batcher import ActivationReport, ExportBatcher, ExportSummary
from .layout import COLUMNS, ExportItem, render_csv
from .schedule import ExportSchedule

__all__ = [
    "ActivationReport",
    "COLUMNS",
    "ExportBatcher",
    "ExportItem",
    "ExportSchedule",
    "ExportSummary",
    "render_csv",
]
