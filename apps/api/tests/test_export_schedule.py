from datetime import date

from apiary_api.core.settings import Settings
from apiary_api.services.exports import ExportSchedule


def test_schedule_groups_and_orders_dates():
    schedule = ExportSchedule([date(2027, 1, 11), date(2026, 3, 2), date(2026, 1, 12), date(2026, 3, 2)])

    assert schedule.dates_for(2026) == [date(2026, 1, 12), date(2026, 3, 2)]
    assert schedule.dates_for(2027) == [date(2027, 1, 11)]
    assert schedule.dates_for(2025) == []
    assert schedule.is_export_date(date(2026, 3, 2))
    assert not schedule.is_export_date(date(2026, 3, 3))


def test_schedule_navigation_is_strict():
    schedule = ExportSchedule([date(2026, 1, 12), date(2026, 3, 2)])

    assert schedule.next_export_date(date(2026, 1, 1)) == date(2026, 1, 12)
    assert schedule.next_export_date(date(2026, 1, 12)) == date(2026, 3, 2)
    assert schedule.next_export_date(date(2026, 3, 2)) is None
    assert schedule.previous_export_date(date(2026, 3, 2)) == date(2026, 1, 12)
    assert schedule.previous_export_date(date(2026, 1, 12)) is None


def test_schedule_from_settings_parses_configured_dates():
    schedule = ExportSchedule.from_settings(Settings(partner_export_dates="2026-05-04, 2026-04-06"))

    assert schedule.dates_for(2026) == [date(2026, 4, 6), date(2026, 5, 4)]
