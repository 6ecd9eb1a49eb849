from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import CHANNEL_CHAT, CHANNEL_EMAIL, CHANNEL_PUSH, NO_LESSON_SUBJECT, VALID_CHANNELS


@dataclass(frozen=True, slots=True)
class LessonEntry:
    """One timetable slot. ``time`` is ``HH:MM-HH:MM`` or empty."""

    subject: str
    time: str = ""
    room: str = ""
    teacher: str = ""

    @property
    def is_placeholder(self) -> bool:
        return (self.subject or "").strip() == NO_LESSON_SUBJECT

    @classmethod
    def from_dict(cls, payload: Dict[str, str]) -> "LessonEntry":
        return cls(
            subject=str(payload.get("subject") or ""),
            time=str(payload.get("time") or ""),
            room=str(payload.get("room") or ""),
            teacher=str(payload.get("teacher") or ""),
        )

    def to_dict(self) -> Dict[str, str]:
        return {"subject": self.subject, "time": self.time, "room": self.room, "teacher": self.teacher}


@dataclass(frozen=True, slots=True)
class DaySchedule:
    week_type: str
    day: str
    lessons: Sequence[LessonEntry] = ()

    def real_lessons(self) -> List[LessonEntry]:
        return [lesson for lesson in self.lessons if not lesson.is_placeholder]


@dataclass(slots=True)
class Recipient:
    """Represents a user or destination for notifications."""

    push_token: Optional[str] = None
    email: Optional[str] = None
    chat_id: Optional[str] = None
    recipient_id: Optional[str] = None
    name: Optional[str] = None

    def address_for(self, channel: str) -> Optional[str]:
        if channel == CHANNEL_PUSH:
            return self.push_token or None
        if channel == CHANNEL_EMAIL:
            return self.email or None
        if channel == CHANNEL_CHAT:
            return self.chat_id or None
        return None

    @property
    def channels(self) -> List[str]:
        return [channel for channel in VALID_CHANNELS if self.address_for(channel)]

    def only(self, channel: str) -> "Recipient":
        """Copy of this recipient reachable on a single channel."""
        return Recipient(
            push_token=self.push_token if channel == CHANNEL_PUSH else None,
            email=self.email if channel == CHANNEL_EMAIL else None,
            chat_id=self.chat_id if channel == CHANNEL_CHAT else None,
            recipient_id=self.recipient_id,
            name=self.name,
        )

    @property
    def label(self) -> str:
        if self.recipient_id:
            return str(self.recipient_id)
        return self.email or self.chat_id or (self.push_token or "")[:12] or "<anonymous>"


@dataclass(frozen=True, slots=True)
class NotificationRequest:
    """Structured payload passed to concrete notification senders."""

    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ChannelOutcome:
    channel: str
    success: bool
    error: Optional[str] = None


@dataclass(slots=True)
class RecipientOutcome:
    recipient: Recipient
    channels: List[ChannelOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.error is None and bool(self.channels) and all(c.success for c in self.channels)

    @property
    def failed_channels(self) -> List[str]:
        return [c.channel for c in self.channels if not c.success]


@dataclass(slots=True)
class DispatchReport:
    """Aggregate result of one multicast. Returned and logged, never stored."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    outcomes: List[RecipientOutcome] = field(default_factory=list)

    @classmethod
    def from_outcomes(cls, outcomes: List[RecipientOutcome]) -> "DispatchReport":
        succeeded = sum(1 for outcome in outcomes if outcome.delivered)
        return cls(total=len(outcomes), succeeded=succeeded, failed=len(outcomes) - succeeded, outcomes=outcomes)

    def summary(self) -> Dict[str, object]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "failures": [
                {"recipient": o.recipient.label, "channels": o.failed_channels, "error": o.error}
                for o in self.outcomes
                if not o.delivered
            ],
        }
