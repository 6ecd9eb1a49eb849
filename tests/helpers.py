"""Fakes shared across the notification tests."""
import threading
from datetime import datetime
from zoneinfo import ZoneInfo

from notifications.calendar import CalendarInfo, get_day_name
from notifications.models import DaySchedule, LessonEntry

BAKU = ZoneInfo("Asia/Baku")


def at(year, month, day, hour, minute, second=0):
    return datetime(year, month, day, hour, minute, second, tzinfo=BAKU)


def fixed_resolver(week_type):
    """Resolver pinned to one parity so tests do not depend on ISO week numbers."""

    def _resolve(instant):
        day = instant.date()
        return CalendarInfo(week_type=week_type, day_name=get_day_name(day), date=day)

    return _resolve


class FakeLessonStore:
    def __init__(self):
        self.schedules = {}
        self.lookups = []
        self.error = None

    def add(self, week_type, day, lessons):
        self.schedules[(week_type, day)] = DaySchedule(
            week_type=week_type,
            day=day,
            lessons=tuple(LessonEntry(**lesson) if isinstance(lesson, dict) else lesson for lesson in lessons),
        )

    def find_schedule(self, week_type, day):
        self.lookups.append((week_type, day))
        if self.error:
            raise self.error
        return self.schedules.get((week_type, day))


class FakeDirectory:
    def __init__(self, recipients=None, error=None):
        self.recipients = list(recipients or [])
        self.error = error
        self.calls = []

    def list_recipients(self, channel=None):
        self.calls.append(channel)
        if self.error:
            raise self.error
        if channel is None:
            return list(self.recipients)
        return [r for r in self.recipients if r.address_for(channel)]


class RecordingSender:
    def __init__(self, channel, result=True, error=None, block=False):
        self.channel = channel
        self.result = result
        self.error = error
        self.block = block
        self.sent = []
        self.release = threading.Event()
        self._lock = threading.Lock()

    def send(self, address, request):
        with self._lock:
            self.sent.append((address, request))
        if self.block:
            self.release.wait(5)
        if self.error:
            raise self.error
        if callable(self.result):
            return self.result(address)
        return self.result
