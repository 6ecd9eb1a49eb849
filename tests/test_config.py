import base64
import json
from datetime import date

import pytest

from notifications.config import (
    ConfigurationError,
    NotifierSettings,
    decode_credentials,
    load_settings,
    parse_clock,
)


def _encoded(info):
    return base64.b64encode(json.dumps(info).encode()).decode()


def _complete(**overrides):
    values = dict(
        database_url="sqlite://",
        smtp_host="smtp.example.com",
        email_sender="bot@example.com",
        firebase_credentials_b64=_encoded({"project_id": "demo"}),
        telegram_bot_token="123:abc",
    )
    values.update(overrides)
    return NotifierSettings(**values)


def test_load_settings_defaults():
    settings = load_settings({"DATA_DIR": "/srv/data"})

    assert settings.database_url == "sqlite:////srv/data/notifier.db"
    assert settings.timezone == "Asia/Baku"
    assert (settings.digest_hour, settings.digest_minute) == (20, 0)
    assert settings.reminder_interval == 5
    assert settings.enabled_channels == ("push", "email", "chat")
    assert settings.broker_url == "redis://localhost:6379/0"
    assert settings.result_backend == settings.broker_url
    assert settings.smtp_use_tls


def test_load_settings_reads_environment():
    settings = load_settings(
        {
            "DATABASE_URL": "postgresql://db/notifier",
            "NOTIFY_TIMEZONE": "Europe/Istanbul",
            "NOTIFY_DIGEST_TIME": "19:30",
            "NOTIFY_CHANNELS": " Chat , email ",
            "NOTIFY_SEMESTER_START": "2024-09-16",
            "NOTIFY_SEND_TIMEOUT": "7.5",
            "SMTP_USE_TLS": "false",
            "EMAIL_USER": "school@example.com",
            "TELEGRAM_CHAT_ID": "-100",
            "REDIS_URL": "redis://cache:6379/1",
        }
    )

    assert settings.database_url == "postgresql://db/notifier"
    assert (settings.digest_hour, settings.digest_minute) == (19, 30)
    assert settings.enabled_channels == ("chat", "email")
    assert settings.semester_start == date(2024, 9, 16)
    assert settings.send_timeout == 7.5
    assert not settings.smtp_use_tls
    assert settings.email_sender == "school@example.com"
    assert settings.telegram_fallback_chat_id == "-100"
    assert settings.broker_url == "redis://cache:6379/1"


@pytest.mark.parametrize(
    "env",
    [
        {"NOTIFY_SEMESTER_START": "16.09.2024"},
        {"NOTIFY_REMINDER_INTERVAL": "five"},
        {"SMTP_PORT": ""},
    ],
)
def test_load_settings_rejects_malformed_values(env):
    with pytest.raises(ConfigurationError):
        load_settings(env)


def test_parse_clock():
    assert parse_clock("07:05") == (7, 5)
    assert parse_clock(" 20:00 ") == (20, 0)
    for bad in ("24:00", "7", "ab:cd", "12:60"):
        with pytest.raises(ConfigurationError):
            parse_clock(bad)


def test_decode_credentials_requires_project_id():
    assert decode_credentials(_encoded({"project_id": "demo"}))["project_id"] == "demo"
    with pytest.raises(ConfigurationError):
        decode_credentials(_encoded({"client_email": "svc@example.com"}))
    with pytest.raises(ConfigurationError):
        decode_credentials("not base64!")


def test_complete_settings_validate():
    _complete().validate()


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"smtp_host": None}, "SMTP_HOST"),
        ({"email_sender": None}, "NOTIFY_FROM_EMAIL"),
        ({"firebase_credentials_b64": None}, "FIREBASE_CREDENTIALS_BASE64"),
        ({"telegram_bot_token": None}, "TELEGRAM_BOT_TOKEN"),
        ({"enabled_channels": ("chat", "sms")}, "sms"),
        ({"enabled_channels": ()}, "no channel"),
        ({"timezone": "Mars/Olympus"}, "time zone"),
        ({"digest_time": "8pm"}, "clock time"),
        ({"reminder_interval": 0}, "between 1 and 59"),
        ({"max_workers": 0}, "positive"),
    ],
)
def test_validate_refuses_incomplete_settings(overrides, message):
    with pytest.raises(ConfigurationError) as excinfo:
        _complete(**overrides).validate()

    assert message in str(excinfo.value)


def test_disabled_channel_needs_no_credentials():
    settings = NotifierSettings(database_url="sqlite://", enabled_channels=("chat",), telegram_bot_token="123:abc")

    settings.validate()
    assert not settings.channel_enabled("email")
