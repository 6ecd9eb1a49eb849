"""Week parity and day-name resolution for the alternating timetable."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional, Union

from .config import WEEKDAY_NAMES, WEEKEND_DAYS


@dataclass(frozen=True, slots=True)
class CalendarInfo:
    week_type: str
    day_name: str
    date: date

    @property
    def is_weekend(self) -> bool:
        return self.day_name in WEEKEND_DAYS


def determine_week_type(day: date, semester_start: Optional[date] = None) -> str:
    """Week 1 of the semester is "odd"; without a start date the ISO week number decides."""
    if semester_start is None:
        week_number = day.isocalendar()[1]
    else:
        anchor = semester_start - timedelta(days=semester_start.weekday())
        week_number = (day - anchor).days // 7 + 1
    return "odd" if week_number % 2 else "even"


def get_day_name(day: date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def resolve_calendar(instant: Union[datetime, date], semester_start: Optional[date] = None) -> CalendarInfo:
    day = instant.date() if isinstance(instant, datetime) else instant
    return CalendarInfo(
        week_type=determine_week_type(day, semester_start),
        day_name=get_day_name(day),
        date=day,
    )
