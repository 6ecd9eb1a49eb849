"""Decide which digests and lesson reminders are due at a given instant.

Both collectors are pure: they read the timetable through the lesson store
and keep no memory between calls. De-duplication across ticks belongs to the
scheduler (see ``notifications.tasks.ReminderLedger``).
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from .calendar import CalendarInfo, resolve_calendar
from .config import REMINDER_LEAD_MINUTES, REMINDER_WINDOW_MINUTES, TIME_RANGE_SEPARATOR
from .models import DaySchedule, LessonEntry, NotificationRequest
from .service import create_request

LOGGER = logging.getLogger(__name__)

Resolver = Callable[[datetime], CalendarInfo]


class ScheduleSource(Protocol):
    def find_schedule(self, week_type: str, day: str) -> Optional[DaySchedule]:
        ...


def parse_start(time_range: str) -> Optional[Tuple[int, int]]:
    """Return ``(hour, minute)`` of the start half of ``HH:MM-HH:MM``, or None if malformed."""
    if not time_range or TIME_RANGE_SEPARATOR not in time_range:
        return None
    start = time_range.split(TIME_RANGE_SEPARATOR, 1)[0].strip()
    parts = start.split(":")
    if len(parts) != 2:
        return None
    try:
        hour, minute = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return hour, minute


def _start_label(lesson: LessonEntry) -> str:
    if not lesson.time:
        return "N/A"
    return lesson.time.split(TIME_RANGE_SEPARATOR, 1)[0].strip() or "N/A"


def _format_lesson_line(index: int, lesson: LessonEntry) -> str:
    return f"{index}. {lesson.time} - {lesson.subject} ({lesson.room})"


def build_tomorrow_digest(
    now: datetime,
    lesson_store: ScheduleSource,
    resolver: Resolver = resolve_calendar,
) -> Optional[NotificationRequest]:
    info = resolver(now + timedelta(days=1))
    if info.is_weekend:
        LOGGER.info("Tomorrow (%s) is a weekend day, no digest", info.day_name)
        return None

    schedule = lesson_store.find_schedule(info.week_type, info.day_name)
    lessons = schedule.real_lessons() if schedule else []
    if not lessons:
        LOGGER.info("No lessons found for tomorrow (%s, %s week)", info.day_name, info.week_type)
        return None

    count = len(lessons)
    header = (
        f"{info.day_name} ({info.week_type} week): {count} lesson{'s' if count != 1 else ''}. "
        f"First lesson: {_start_label(lessons[0])}"
    )
    body_lines = [header, "", *(_format_lesson_line(i, lesson) for i, lesson in enumerate(lessons, 1))]
    return create_request(
        f"Tomorrow's schedule - {info.day_name}",
        body_lines,
        data={
            "kind": "daily_digest",
            "date": info.date.isoformat(),
            "week_type": info.week_type,
            "day": info.day_name,
        },
    )


def _reminder_for(lesson: LessonEntry, info: CalendarInfo) -> NotificationRequest:
    body_lines = [
        f"{lesson.time} - {lesson.subject} starts in {REMINDER_LEAD_MINUTES} minutes.",
        f"Teacher: {lesson.teacher}",
        f"Room: {lesson.room}",
    ]
    return create_request(
        f"Lesson starting: {lesson.subject}",
        body_lines,
        data={
            "kind": "lesson_reminder",
            "date": info.date.isoformat(),
            "time": lesson.time,
            "subject": lesson.subject,
            "room": lesson.room,
        },
    )


def collect_due_reminders(
    now: datetime,
    lesson_store: ScheduleSource,
    resolver: Resolver = resolve_calendar,
    window: Tuple[int, int] = REMINDER_WINDOW_MINUTES,
) -> List[NotificationRequest]:
    """Reminders for lessons starting between ``window[0]`` and ``window[1]`` minutes from ``now``.

    The window is wider than the poll interval so every lesson lands in at
    least one tick.
    """
    info = resolver(now)
    if info.is_weekend:
        LOGGER.debug("Today (%s) is a weekend day, no reminders", info.day_name)
        return []

    schedule = lesson_store.find_schedule(info.week_type, info.day_name)
    if not schedule or not schedule.lessons:
        LOGGER.debug("No lessons found for today (%s, %s week)", info.day_name, info.week_type)
        return []

    earliest, latest = window
    due: List[NotificationRequest] = []
    for lesson in schedule.lessons:
        if lesson.is_placeholder or not lesson.time:
            continue
        if TIME_RANGE_SEPARATOR not in lesson.time:
            LOGGER.warning("Invalid time format for lesson %s: %r", lesson.subject, lesson.time)
            continue
        start = parse_start(lesson.time)
        if start is None:
            LOGGER.warning("Could not parse time for lesson %s: %r", lesson.subject, lesson.time)
            continue

        hour, minute = start
        lesson_instant = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        delta_minutes = (lesson_instant - now).total_seconds() / 60
        if earliest <= delta_minutes <= latest:
            due.append(_reminder_for(lesson, info))
    return due


__all__ = [
    "build_tomorrow_digest",
    "collect_due_reminders",
    "parse_start",
]
