"""SQLAlchemy persistence for recipients and the weekly timetable."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import CHANNEL_CHAT, CHANNEL_EMAIL, CHANNEL_PUSH
from .models import DaySchedule, LessonEntry, Recipient

LOGGER = logging.getLogger(__name__)

Base = declarative_base()


class RecipientModel(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String(120))
    email = Column(String(255), index=True)
    device_token = Column(String(512))
    telegram_chat_id = Column(String(64), unique=True)
    telegram_username = Column(String(120))
    first_name = Column(String(120))
    last_name = Column(String(120))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class ScheduleModel(Base):
    __tablename__ = "schedules"
    __table_args__ = (UniqueConstraint("week_type", "day", name="uq_schedule_day"),)
    id = Column(Integer, primary_key=True)
    week_type = Column(String(8), nullable=False)
    day = Column(String(16), nullable=False)
    lessons = Column(JSON, default=list)


def create_session_factory(database_url: str, *, create_tables: bool = True) -> sessionmaker:
    engine_kwargs: dict[str, Any] = {"future": True}
    if str(database_url).startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        pool_pre_ping = False
    else:
        pool_pre_ping = True
    engine = create_engine(database_url, pool_pre_ping=pool_pre_ping, **engine_kwargs)
    if create_tables:
        Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def _clean(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    return value or None


def recipient_to_dict(model: RecipientModel) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": model.id,
        "name": model.name,
        "email": model.email,
        "deviceToken": model.device_token,
        "telegramChatId": model.telegram_chat_id,
        "telegramUsername": model.telegram_username,
        "firstName": model.first_name,
        "lastName": model.last_name,
    }
    if model.created_at:
        data["createdAt"] = model.created_at.isoformat(timespec="seconds")
    return data


def _to_recipient(model: RecipientModel) -> Recipient:
    return Recipient(
        push_token=_clean(model.device_token),
        email=_clean(model.email),
        chat_id=_clean(model.telegram_chat_id),
        recipient_id=str(model.id),
        name=model.name,
    )


_CHANNEL_COLUMNS = {
    CHANNEL_PUSH: RecipientModel.device_token,
    CHANNEL_EMAIL: RecipientModel.email,
    CHANNEL_CHAT: RecipientModel.telegram_chat_id,
}


class RecipientDirectory:
    """Read side for the dispatcher plus the upserts used by the HTTP layer."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_recipients(self, channel: Optional[str] = None) -> List[Recipient]:
        with self._session_factory() as session:
            query = session.query(RecipientModel)
            if channel is not None:
                column = _CHANNEL_COLUMNS.get(channel)
                if column is None:
                    raise ValueError(f"Unknown channel {channel!r}")
                query = query.filter(column.isnot(None), column != "")
            rows = query.order_by(RecipientModel.id).all()
        recipients = [_to_recipient(row) for row in rows]
        if channel is not None:
            recipients = [r for r in recipients if r.address_for(channel)]
        return recipients

    def save_device_user(self, name: Optional[str], email: Optional[str], device_token: Optional[str]) -> Tuple[Dict[str, Any], bool]:
        """Create the user, or refresh the device token of an existing email. Returns ``(record, created)``."""
        email = _clean(email)
        with self._session_factory.begin() as session:
            row = None
            if email:
                row = session.query(RecipientModel).filter(RecipientModel.email == email).first()
            if row:
                row.device_token = _clean(device_token)
                session.flush()
                return recipient_to_dict(row), False
            row = RecipientModel(name=_clean(name), email=email, device_token=_clean(device_token))
            session.add(row)
            session.flush()
            return recipient_to_dict(row), True

    def update_device_token(self, email: str, device_token: Optional[str]) -> Optional[Dict[str, Any]]:
        with self._session_factory.begin() as session:
            row = session.query(RecipientModel).filter(RecipientModel.email == email).first()
            if not row:
                return None
            row.device_token = _clean(device_token)
            session.flush()
            return recipient_to_dict(row)

    def register_chat(
        self,
        chat_id: str,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], bool]:
        chat_id = str(chat_id)
        with self._session_factory.begin() as session:
            row = session.query(RecipientModel).filter(RecipientModel.telegram_chat_id == chat_id).first()
            if row:
                return recipient_to_dict(row), False
            row = RecipientModel(
                telegram_chat_id=chat_id,
                telegram_username=_clean(username),
                first_name=_clean(first_name),
                last_name=_clean(last_name),
                name=_clean(username) or _clean(first_name) or "Telegram user",
            )
            session.add(row)
            session.flush()
            LOGGER.info("Registered chat recipient %s", chat_id)
            return recipient_to_dict(row), True


class LessonStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def find_schedule(self, week_type: str, day: str) -> Optional[DaySchedule]:
        with self._session_factory() as session:
            row = (
                session.query(ScheduleModel)
                .filter(ScheduleModel.week_type == week_type, ScheduleModel.day == day)
                .first()
            )
            if not row:
                return None
            lessons = tuple(LessonEntry.from_dict(item) for item in (row.lessons or []) if isinstance(item, dict))
            return DaySchedule(week_type=row.week_type, day=row.day, lessons=lessons)

    def save_schedule(self, week_type: str, day: str, lessons: Iterable[LessonEntry]) -> DaySchedule:
        lessons = tuple(lessons)
        payload = [lesson.to_dict() for lesson in lessons]
        with self._session_factory.begin() as session:
            row = (
                session.query(ScheduleModel)
                .filter(ScheduleModel.week_type == week_type, ScheduleModel.day == day)
                .first()
            )
            if row:
                row.lessons = payload
            else:
                session.add(ScheduleModel(week_type=week_type, day=day, lessons=payload))
        return DaySchedule(week_type=week_type, day=day, lessons=lessons)
