from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime
from functools import partial
from typing import Callable, Dict, Iterator, List, Optional, Set

from celery import shared_task
from celery.exceptions import WorkerShutdown
from celery.signals import worker_init

from .calendar import resolve_calendar
from .channels import build_senders
from .collectors import Resolver, ScheduleSource, build_tomorrow_digest, collect_due_reminders
from .config import ConfigurationError, NotifierSettings, load_settings
from .models import NotificationRequest
from .service import DispatchEngine, RecipientSource, create_request
from .storage import LessonStore, RecipientDirectory, create_session_factory

LOGGER = logging.getLogger(__name__)


class TriggerGuard:
    """Non-blocking mutex: a firing that finds the trigger busy is skipped."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[bool]:
        acquired = self._lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lock.release()


class ReminderLedger:
    """Lesson reminders already sent on the current local day."""

    def __init__(self):
        self._day: Optional[date] = None
        self._keys: Set[str] = set()
        self._lock = threading.Lock()

    @staticmethod
    def key_for(request: NotificationRequest) -> str:
        data = request.data or {}
        return "|".join((data.get("date", ""), data.get("time", ""), data.get("subject", request.title)))

    def claim(self, day: date, request: NotificationRequest) -> bool:
        key = self.key_for(request)
        with self._lock:
            if self._day != day:
                self._day = day
                self._keys.clear()
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, request: NotificationRequest) -> None:
        with self._lock:
            self._keys.discard(self.key_for(request))


class SchedulerDriver:
    """Runs the digest and reminder triggers: evaluate the window, then dispatch."""

    def __init__(
        self,
        engine: DispatchEngine,
        directory: RecipientSource,
        lesson_store: ScheduleSource,
        *,
        timezone=None,
        resolver: Resolver = resolve_calendar,
        ledger: Optional[ReminderLedger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.directory = directory
        self.lesson_store = lesson_store
        self.timezone = timezone
        self.resolver = resolver
        self.ledger = ledger or ReminderLedger()
        self.clock = clock or (lambda: datetime.now(self.timezone))
        self.digest_guard = TriggerGuard("digest")
        self.reminder_guard = TriggerGuard("reminders")

    def run_digest(self, now: Optional[datetime] = None) -> Dict[str, object]:
        with self.digest_guard.hold() as acquired:
            if not acquired:
                LOGGER.warning("Digest trigger still running, skipping this firing")
                return {"status": "skipped"}
            now = now or self.clock()
            try:
                request = build_tomorrow_digest(now, self.lesson_store, self.resolver)
                if request is None:
                    return {"status": "idle"}
                recipients = self.directory.list_recipients()
                report = self.engine.dispatch_multicast(recipients, request)
            except Exception as exc:
                LOGGER.exception("Digest trigger failed")
                return {"status": "failed", "error": str(exc)}
            LOGGER.info("Evening digest sent to %d/%d recipients", report.succeeded, report.total)
            return {"status": "sent" if report.total else "idle", **report.summary()}

    def run_reminders(self, now: Optional[datetime] = None) -> Dict[str, object]:
        with self.reminder_guard.hold() as acquired:
            if not acquired:
                LOGGER.warning("Reminder trigger still running, skipping this tick")
                return {"status": "skipped"}
            now = now or self.clock()
            try:
                due = collect_due_reminders(now, self.lesson_store, self.resolver)
                due = [request for request in due if self.ledger.claim(now.date(), request)]
                if not due:
                    return {"status": "idle"}
                try:
                    recipients = self.directory.list_recipients()
                except Exception:
                    for request in due:
                        self.ledger.release(request)
                    raise

                lessons: List[Dict[str, object]] = []
                for request in due:
                    report = self.engine.dispatch_multicast(recipients, request)
                    LOGGER.info("Lesson reminder '%s' sent to %d recipients", request.title, report.succeeded)
                    lessons.append({"title": request.title, **report.summary()})
            except Exception as exc:
                LOGGER.exception("Reminder trigger failed")
                return {"status": "failed", "error": str(exc)}
            return {"status": "sent", "lessons": lessons}

    def broadcast(self, channel: str, request: NotificationRequest) -> Dict[str, object]:
        report = self.engine.broadcast_to_channel(channel, request)
        return {"status": "sent" if report.total else "idle", **report.summary()}


def build_driver(settings: NotifierSettings) -> SchedulerDriver:
    session_factory = create_session_factory(settings.database_url)
    directory = RecipientDirectory(session_factory)
    engine = DispatchEngine(
        build_senders(settings),
        directory,
        send_timeout=settings.send_timeout,
        max_workers=settings.max_workers,
        fallback_chat_id=settings.telegram_fallback_chat_id,
    )
    return SchedulerDriver(
        engine,
        directory,
        LessonStore(session_factory),
        timezone=settings.zone(),
        resolver=partial(resolve_calendar, semester_start=settings.semester_start),
    )


_driver: Optional[SchedulerDriver] = None
_driver_lock = threading.Lock()


def init_driver(settings: Optional[NotifierSettings] = None) -> SchedulerDriver:
    """Validate settings and build the process-wide driver. Raises ConfigurationError when misconfigured."""
    global _driver
    with _driver_lock:
        if _driver is None:
            settings = settings or load_settings()
            settings.validate()
            _driver = build_driver(settings)
            LOGGER.info(
                "Notification driver ready (timezone %s, channels %s)",
                settings.timezone,
                ", ".join(sorted(_driver.engine.senders)),
            )
        return _driver


def get_driver() -> SchedulerDriver:
    return _driver or init_driver()


@worker_init.connect
def _bootstrap_driver(**_kwargs) -> None:
    # signal receivers have plain exceptions logged and dropped; SystemExit stops the worker
    try:
        init_driver()
    except ConfigurationError as exc:
        LOGGER.critical("Refusing to start worker: %s", exc)
        raise WorkerShutdown(str(exc)) from exc


@shared_task(name="notifications.tasks.send_tomorrow_digest")
def send_tomorrow_digest() -> Dict[str, object]:
    return get_driver().run_digest()


@shared_task(name="notifications.tasks.send_lesson_reminders")
def send_lesson_reminders() -> Dict[str, object]:
    return get_driver().run_reminders()


@shared_task(name="notifications.tasks.broadcast_notification")
def broadcast_notification(channel: str, title: str, body: str, data: Optional[Dict[str, str]] = None) -> Dict[str, object]:
    request = create_request(title, body.splitlines(), data=data)
    return get_driver().broadcast(channel, request)
