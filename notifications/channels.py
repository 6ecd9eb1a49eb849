from __future__ import annotations

import html
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, Optional

import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from .config import (
    CHANNEL_CHAT,
    CHANNEL_EMAIL,
    CHANNEL_PUSH,
    TELEGRAM_API_BASE,
    NotifierSettings,
)
from .models import NotificationRequest

LOGGER = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"

EMAIL_FOOTER = "This message was sent automatically by the class timetable notification service."


def render_email_html(title: str, body: str) -> str:
    safe_body = html.escape(body).replace("\n", "<br>\n")
    return f"""<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
  <h2 style="color: #1a56db;">{html.escape(title)}</h2>
  <div style="margin-top: 20px; padding: 15px; background-color: #f0f4ff; border-radius: 5px;">
{safe_body}
  </div>
  <p style="margin-top: 20px; font-size: 12px; color: #6b7280;">{EMAIL_FOOTER}</p>
</div>"""


class EmailSender:
    """Send the notification via SMTP email."""

    channel = CHANNEL_EMAIL

    def __init__(
        self,
        host: str,
        sender: str,
        *,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 10,
    ):
        self.host = host
        self.sender = sender
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def _connection(self) -> smtplib.SMTP:
        server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        try:
            if self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
        except Exception:
            server.quit()
            raise
        return server

    def build_message(self, address: str, request: NotificationRequest) -> EmailMessage:
        email = EmailMessage()
        email["Subject"] = request.title
        email["From"] = self.sender
        email["To"] = address
        email.set_content(request.body)
        email.add_alternative(render_email_html(request.title, request.body), subtype="html")
        return email

    def send(self, address: str, request: NotificationRequest) -> bool:
        email = self.build_message(address, request)
        try:
            with self._connection() as server:
                server.send_message(email)
            LOGGER.info("Sent email notification '%s' to %s", request.title, address)
            return True
        except Exception as exc:  # pragma: no cover - network dependant
            LOGGER.exception("Failed to send email notification to %s: %s", address, exc)
            return False


class PushSender:
    """Firebase Cloud Messaging (HTTP v1) push notifications."""

    channel = CHANNEL_PUSH

    def __init__(self, project_id: str, session: requests.Session, *, timeout: float = 10):
        self.project_id = project_id
        self.session = session
        self.timeout = timeout

    @classmethod
    def from_service_account(cls, info: Dict[str, Any], *, timeout: float = 10) -> "PushSender":
        credentials = service_account.Credentials.from_service_account_info(info, scopes=[FCM_SCOPE])
        return cls(info["project_id"], AuthorizedSession(credentials), timeout=timeout)

    @property
    def url(self) -> str:
        return FCM_SEND_URL.format(project_id=self.project_id)

    @staticmethod
    def build_payload(token: str, request: NotificationRequest) -> Dict[str, Any]:
        return {
            "message": {
                "token": token,
                "notification": {"title": request.title, "body": request.body},
                "data": {str(k): str(v) for k, v in (request.data or {}).items()},
                "android": {"priority": "HIGH"},
            }
        }

    def send(self, token: str, request: NotificationRequest) -> bool:
        try:
            resp = self.session.post(self.url, json=self.build_payload(token, request), timeout=self.timeout)
            if resp.status_code >= 400:
                LOGGER.error("FCM responded with %s: %s", resp.status_code, resp.text[:400])
                return False
            LOGGER.info("Sent push notification '%s' to device %s...", request.title, token[:12])
            return True
        except Exception as exc:  # pragma: no cover - network dependant
            LOGGER.exception("Failed to send push notification: %s", exc)
            return False


class ChatSender:
    """Telegram Bot API ``sendMessage``."""

    channel = CHANNEL_CHAT

    def __init__(
        self,
        bot_token: str,
        *,
        api_base: str = TELEGRAM_API_BASE,
        session: Optional[requests.Session] = None,
        timeout: float = 5,
    ):
        self.bot_token = bot_token
        self.api_base = api_base.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    @property
    def url(self) -> str:
        return f"{self.api_base}/bot{self.bot_token}/sendMessage"

    @staticmethod
    def format_message(request: NotificationRequest) -> str:
        return f"📢 *{request.title}*\n\n{request.body}"

    def send(self, chat_id: str, request: NotificationRequest) -> bool:
        return self.send_text(chat_id, self.format_message(request))

    def send_text(self, chat_id: str, text: str) -> bool:
        # plain-text retry only after a 400 on the Markdown attempt
        for parse_mode in ("Markdown", None):
            payload: Dict[str, Any] = {"chat_id": chat_id, "text": text}
            if parse_mode:
                payload["parse_mode"] = parse_mode
            try:
                resp = self.session.post(self.url, json=payload, timeout=self.timeout)
            except Exception as exc:  # pragma: no cover - network dependant
                LOGGER.exception("Failed to send chat notification to %s: %s", chat_id, exc)
                return False

            if resp.status_code == 400 and parse_mode:
                LOGGER.warning("Telegram rejected Markdown for %s, retrying as plain text", chat_id)
                continue
            if resp.status_code == 429:
                retry_after = _json(resp).get("parameters", {}).get("retry_after")
                LOGGER.error("Telegram rate limit hit for %s (retry after %ss)", chat_id, retry_after)
                return False
            if resp.status_code >= 400 or not _json(resp).get("ok", False):
                LOGGER.error("Telegram responded with %s for %s: %s", resp.status_code, chat_id, resp.text[:200])
                return False

            message_id = _json(resp).get("result", {}).get("message_id")
            LOGGER.info("Sent chat notification to %s (message %s)", chat_id, message_id)
            return True
        return False


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def build_senders(settings: NotifierSettings) -> Dict[str, Any]:
    """Construct one long-lived sender per enabled channel."""
    senders: Dict[str, Any] = {}
    if settings.channel_enabled(CHANNEL_EMAIL) and settings.smtp_host and settings.email_sender:
        senders[CHANNEL_EMAIL] = EmailSender(
            settings.smtp_host,
            settings.email_sender,
            port=settings.smtp_port,
            username=settings.smtp_username,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls,
        )
    if settings.channel_enabled(CHANNEL_PUSH) and settings.firebase_credentials_b64:
        senders[CHANNEL_PUSH] = PushSender.from_service_account(settings.firebase_credentials())
    if settings.channel_enabled(CHANNEL_CHAT) and settings.telegram_bot_token:
        senders[CHANNEL_CHAT] = ChatSender(settings.telegram_bot_token, api_base=settings.telegram_api_base)
    for channel in settings.enabled_channels:
        if channel not in senders:
            LOGGER.warning("Channel %s is enabled but not configured; it will be skipped", channel)
    return senders
