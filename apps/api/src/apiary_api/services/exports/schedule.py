"""Partner export calendar."""

from __future__ import annotations

from datetime import date
from typing import Iterable

from apiary_api.core.settings import Settings, get_settings


class ExportSchedule:
    """Configured export dates, grouped by campaign year."""

    def __init__(self, dates: Iterable[date]) -> None:
        self._dates = sorted(set(dates))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ExportSchedule":
        resolved = settings or get_settings()
        return cls(resolved.partner_export_dates)

    def dates_for(self, year: int) -> list[date]:
        return [day for day in self._dates if day.year == year]

    def first_export_date(self, year: int) -> date | None:
        dates = self.dates_for(year)
        return dates[0] if dates else None

    def is_export_date(self, day: date) -> bool:
        return day in self._dates

    def next_export_date(self, after: date) -> date | None:
        """First export date strictly after ``after``."""

        return next((day for day in self._dates if day > after), None)

    def previous_export_date(self, before: date) -> date | None:
        return next((day for day in reversed(self._dates) if day < before), None)


__all__ = ["ExportSchedule"]
