from datetime import date, datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol
from zoneinfo import ZoneInfo

WEEKEND_DAYS = {5, 6}


class HolidaySource(Protocol):
    def list_holidays(self, *, authority_id: str, start: date, end: date) -> list[date]: ...


class WorkingDayCalendar:
    """Adds working days to a timestamp, skipping weekends and authority holidays.

    Day boundaries are evaluated in UTC unless the authority has a configured time
    zone, in which case the walk happens on that authority's local calendar.
    """

    def __init__(
        self,
        *,
        holidays: HolidaySource,
        authority_timezones: Optional[dict[str, str]] = None,
    ) -> None:
        self._holidays = holidays
        self._authority_timezones = {
            authority_id: ZoneInfo(name)
            for authority_id, name in (authority_timezones or {}).items()
        }

    def add_working_days(self, start: datetime, working_days: int, authority_id: str) -> datetime:
        if working_days <= 0:
            return start
        zone = self._authority_timezones.get(authority_id, timezone.utc)
        local_start = _as_aware(start).astimezone(zone)
        window_end = local_start.date() + timedelta(days=working_days * 3 + 15)
        holidays = set(
            self._holidays.list_holidays(
                authority_id=authority_id,
                start=local_start.date(),
                end=window_end,
            )
        )
        current = local_start.date()
        added = 0
        while added < working_days:
            current += timedelta(days=1)
            if is_working_day(current, holidays):
                added += 1
        due_local = datetime.combine(current, local_start.timetz())
        return due_local.astimezone(timezone.utc)


def is_working_day(day: date, holidays: Iterable[date]) -> bool:
    return day.weekday() not in WEEKEND_DAYS and day not in holidays


def _as_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
