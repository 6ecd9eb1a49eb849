"""Shared configuration defaults for the notification system."""
from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass
from datetime import date
from typing import Dict, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

NO_LESSON_SUBJECT = "Dərs yoxdur"
TIME_RANGE_SEPARATOR = "-"

REMINDER_LEAD_MINUTES = 15
REMINDER_WINDOW_MINUTES = (14, 20)

CHANNEL_PUSH = "push"
CHANNEL_EMAIL = "email"
CHANNEL_CHAT = "chat"
VALID_CHANNELS = (CHANNEL_PUSH, CHANNEL_EMAIL, CHANNEL_CHAT)

WEEK_TYPES = ("odd", "even")
WEEKDAY_NAMES = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]
WEEKEND_DAYS = {"Saturday", "Sunday"}

DEFAULT_TIMEZONE = "Asia/Baku"
DEFAULT_DIGEST_TIME = "20:00"
DEFAULT_BROKER_URL = "redis://localhost:6379/0"
TELEGRAM_API_BASE = "https://api.telegram.org"


class ConfigurationError(RuntimeError):
    """Raised when required settings are missing or malformed."""


def _flag(value: Optional[str], default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip() not in {"0", "false", "False", "no", ""}


def parse_clock(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM`` into an ``(hour, minute)`` pair."""
    try:
        hour_raw, minute_raw = value.strip().split(":")
        hour, minute = int(hour_raw), int(minute_raw)
    except (AttributeError, ValueError):
        raise ConfigurationError(f"Invalid clock time {value!r}, expected HH:MM") from None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ConfigurationError(f"Clock time out of range: {value!r}")
    return hour, minute


def decode_credentials(encoded: str) -> Dict[str, str]:
    try:
        raw = base64.b64decode(encoded, validate=True).decode("utf-8")
        info = json.loads(raw)
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ConfigurationError(f"FIREBASE_CREDENTIALS_BASE64 is not valid base64 JSON: {exc}") from exc
    if not isinstance(info, dict) or not info.get("project_id"):
        raise ConfigurationError("Firebase credentials are missing project_id")
    return info


@dataclass(slots=True)
class NotifierSettings:
    """Process-wide settings, read once at startup."""

    database_url: str
    timezone: str = DEFAULT_TIMEZONE
    digest_time: str = DEFAULT_DIGEST_TIME
    reminder_interval: int = 5
    enabled_channels: Tuple[str, ...] = VALID_CHANNELS
    send_timeout: float = 15.0
    max_workers: int = 8
    semester_start: Optional[date] = None

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_sender: Optional[str] = None

    firebase_credentials_b64: Optional[str] = None

    telegram_bot_token: Optional[str] = None
    telegram_fallback_chat_id: Optional[str] = None
    telegram_api_base: str = TELEGRAM_API_BASE

    broker_url: str = DEFAULT_BROKER_URL
    result_backend: Optional[str] = None

    @property
    def digest_hour(self) -> int:
        return parse_clock(self.digest_time)[0]

    @property
    def digest_minute(self) -> int:
        return parse_clock(self.digest_time)[1]

    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown time zone {self.timezone!r}") from None

    def channel_enabled(self, channel: str) -> bool:
        return channel in self.enabled_channels

    def firebase_credentials(self) -> Dict[str, str]:
        if not self.firebase_credentials_b64:
            raise ConfigurationError("FIREBASE_CREDENTIALS_BASE64 not configured")
        return decode_credentials(self.firebase_credentials_b64)

    def validate(self) -> None:
        """Refuse to run degraded: every enabled channel needs its credentials."""
        self.zone()
        parse_clock(self.digest_time)
        if not 1 <= self.reminder_interval <= 59:
            raise ConfigurationError("NOTIFY_REMINDER_INTERVAL must be between 1 and 59 minutes")
        if self.send_timeout <= 0 or self.max_workers < 1:
            raise ConfigurationError("NOTIFY_SEND_TIMEOUT and NOTIFY_MAX_WORKERS must be positive")

        unknown = set(self.enabled_channels) - set(VALID_CHANNELS)
        if unknown:
            raise ConfigurationError(f"Unknown channels in NOTIFY_CHANNELS: {', '.join(sorted(unknown))}")
        if not self.enabled_channels:
            raise ConfigurationError("NOTIFY_CHANNELS enables no channel")

        if self.channel_enabled(CHANNEL_EMAIL):
            if not self.smtp_host:
                raise ConfigurationError("SMTP_HOST is required for the email channel")
            if not self.email_sender:
                raise ConfigurationError("NOTIFY_FROM_EMAIL is required for the email channel")
        if self.channel_enabled(CHANNEL_PUSH):
            self.firebase_credentials()
        if self.channel_enabled(CHANNEL_CHAT) and not self.telegram_bot_token:
            raise ConfigurationError("TELEGRAM_BOT_TOKEN is required for the chat channel")


def _default_database_url(env: Mapping[str, str]) -> str:
    data_dir = env.get("DATA_DIR") or os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    return f"sqlite:///{os.path.join(data_dir, 'notifier.db')}"


def load_settings(environ: Optional[Mapping[str, str]] = None) -> NotifierSettings:
    env = os.environ if environ is None else environ

    channels_raw = env.get("NOTIFY_CHANNELS", ",".join(VALID_CHANNELS))
    channels = tuple(c.strip().lower() for c in channels_raw.split(",") if c.strip())

    semester_raw = env.get("NOTIFY_SEMESTER_START")
    semester_start = None
    if semester_raw:
        try:
            semester_start = date.fromisoformat(semester_raw.strip())
        except ValueError:
            raise ConfigurationError(f"NOTIFY_SEMESTER_START must be YYYY-MM-DD, got {semester_raw!r}") from None

    try:
        reminder_interval = int(env.get("NOTIFY_REMINDER_INTERVAL", "5"))
        send_timeout = float(env.get("NOTIFY_SEND_TIMEOUT", "15"))
        max_workers = int(env.get("NOTIFY_MAX_WORKERS", "8"))
        smtp_port = int(env.get("SMTP_PORT", "587"))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc

    broker_url = env.get("CELERY_BROKER_URL") or env.get("REDIS_URL") or DEFAULT_BROKER_URL

    return NotifierSettings(
        database_url=env.get("DATABASE_URL") or env.get("SQLALCHEMY_DATABASE_URI") or _default_database_url(env),
        timezone=env.get("NOTIFY_TIMEZONE", DEFAULT_TIMEZONE),
        digest_time=env.get("NOTIFY_DIGEST_TIME", DEFAULT_DIGEST_TIME),
        reminder_interval=reminder_interval,
        enabled_channels=channels,
        send_timeout=send_timeout,
        max_workers=max_workers,
        semester_start=semester_start,
        smtp_host=env.get("SMTP_HOST") or None,
        smtp_port=smtp_port,
        smtp_username=env.get("SMTP_USERNAME") or None,
        smtp_password=env.get("SMTP_PASSWORD") or None,
        smtp_use_tls=_flag(env.get("SMTP_USE_TLS"), default=True),
        email_sender=env.get("NOTIFY_FROM_EMAIL") or env.get("EMAIL_USER") or None,
        firebase_credentials_b64=env.get("FIREBASE_CREDENTIALS_BASE64") or None,
        telegram_bot_token=env.get("TELEGRAM_BOT_TOKEN") or None,
        telegram_fallback_chat_id=env.get("TELEGRAM_CHAT_ID") or None,
        telegram_api_base=env.get("TELEGRAM_API_BASE", TELEGRAM_API_BASE),
        broker_url=broker_url,
        result_backend=env.get("CELERY_RESULT_BACKEND") or broker_url,
    )
