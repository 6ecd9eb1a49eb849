from flask import Flask, jsonify, request
import logging
import os
from typing import Any, Dict, Optional

from notifications.channels import ChatSender
from notifications.config import WEEK_TYPES, WEEKDAY_NAMES, load_settings
from notifications.models import LessonEntry
from notifications.storage import LessonStore, RecipientDirectory, create_session_factory

LOGGER = logging.getLogger(__name__)

app = Flask(__name__)

APP_MODE = os.environ.get("APP_MODE", "prod").lower()
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_DIR = os.environ.get("DATA_DIR", BASE_DIR)

os.makedirs(DATA_DIR, exist_ok=True)

# ------------------------------- Paths / Config -------------------------------
SETTINGS = load_settings()

SessionLocal = create_session_factory(SETTINGS.database_url)
directory = RecipientDirectory(SessionLocal)
lesson_store = LessonStore(SessionLocal)

chat_sender: Optional[ChatSender] = None
if SETTINGS.telegram_bot_token:
    chat_sender = ChatSender(SETTINGS.telegram_bot_token, api_base=SETTINGS.telegram_api_base)

SUBSCRIBED_REPLY = "You are now subscribed to timetable notifications!"
SUBSCRIBE_FAILED_REPLY = "Subscription failed. Please try again later."


# ------------------------------- Utilities -------------------------------
def ok(message: str, data: Any = None, status: int = 200):
    return jsonify({"success": True, "message": message, "data": data}), status


def fail(message: str, status: int, error: Optional[str] = None):
    payload: Dict[str, Any] = {"success": False, "message": message}
    if error:
        payload["error"] = error
    return jsonify(payload), status


def normalize_day(value: str) -> Optional[str]:
    value = (value or "").strip().capitalize()
    return value if value in WEEKDAY_NAMES else None


def normalize_week_type(value: str) -> Optional[str]:
    value = (value or "").strip().lower()
    return value if value in WEEK_TYPES else None


def reply_to_chat(chat_id: str, text: str) -> None:
    if chat_sender is None:
        LOGGER.warning("TELEGRAM_BOT_TOKEN not configured; reply to %s suppressed", chat_id)
        return
    chat_sender.send_text(chat_id, text)


@app.get("/healthz")
def healthz():
    return {"ok": True, "mode": APP_MODE}, 200


# ------------------------------- Recipients -------------------------------
@app.route("/api/users", methods=["POST"])
def create_user():
    payload = request.get_json(silent=True) or {}
    try:
        record, created = directory.save_device_user(
            payload.get("name"),
            payload.get("email"),
            payload.get("deviceToken"),
        )
    except Exception as exc:
        LOGGER.exception("Error in create_user")
        return fail("Server error", 500, str(exc))
    if created:
        return ok("User created successfully", record, 201)
    return ok("Device token updated", record)


@app.route("/api/users/device-token", methods=["PUT"])
def update_device_token():
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip()
    if not email:
        return fail("Missing email", 400)
    try:
        record = directory.update_device_token(email, payload.get("deviceToken"))
    except Exception as exc:
        LOGGER.exception("Error in update_device_token")
        return fail("Server error", 500, str(exc))
    if not record:
        return fail("User not found", 404)
    return ok("Device token updated successfully", record)


@app.route("/api/users/telegram/register", methods=["POST"])
def register_telegram_user():
    payload = request.get_json(silent=True) or {}
    chat_id = payload.get("chatId")
    if chat_id in (None, ""):
        return fail("Missing chatId", 400)
    try:
        record, created = directory.register_chat(
            str(chat_id),
            username=payload.get("username"),
            first_name=payload.get("firstName"),
            last_name=payload.get("lastName"),
        )
    except Exception as exc:
        LOGGER.exception("Error in register_telegram_user")
        return fail("Server error", 500, str(exc))
    if created:
        return ok("Telegram user registered successfully", record, 201)
    return ok("Telegram chat ID already registered", record)


@app.route("/api/telegram/webhook", methods=["POST"])
def telegram_webhook():
    update = request.get_json(silent=True) or {}
    message = update.get("message") or {}
    text = (message.get("text") or "").strip()
    chat = message.get("chat") or {}
    if not text.startswith("/start") or chat.get("id") is None:
        return {"ok": True}, 200

    sender = message.get("from") or {}
    chat_id = str(chat["id"])
    try:
        directory.register_chat(
            chat_id,
            username=sender.get("username"),
            first_name=sender.get("first_name"),
            last_name=sender.get("last_name"),
        )
    except Exception:
        LOGGER.exception("Failed to register chat %s", chat_id)
        reply_to_chat(chat_id, SUBSCRIBE_FAILED_REPLY)
        return {"ok": True}, 200

    reply_to_chat(chat_id, SUBSCRIBED_REPLY)
    LOGGER.info("New chat subscriber %s (%s)", chat_id, sender.get("username"))
    return {"ok": True}, 200


# ------------------------------- Timetable -------------------------------
@app.route("/api/schedules/<week_type>/<day>", methods=["GET"])
def get_schedule(week_type: str, day: str):
    week = normalize_week_type(week_type)
    day_name = normalize_day(day)
    if not week or not day_name:
        return fail("Invalid week type or day", 400)
    try:
        schedule = lesson_store.find_schedule(week, day_name)
    except Exception as exc:
        LOGGER.exception("Error in get_schedule")
        return fail("Server error", 500, str(exc))
    if schedule is None:
        return fail("Schedule not found", 404)
    return ok("Schedule found", {
        "weekType": schedule.week_type,
        "day": schedule.day,
        "lessons": [lesson.to_dict() for lesson in schedule.lessons],
    })


@app.route("/api/schedules/<week_type>/<day>", methods=["PUT"])
def put_schedule(week_type: str, day: str):
    week = normalize_week_type(week_type)
    day_name = normalize_day(day)
    if not week or not day_name:
        return fail("Invalid week type or day", 400)

    payload = request.get_json(silent=True) or {}
    lessons_raw = payload.get("lessons")
    if not isinstance(lessons_raw, list) or not all(isinstance(item, dict) for item in lessons_raw):
        return fail("lessons must be a list of objects", 400)

    lessons = [LessonEntry.from_dict(item) for item in lessons_raw]
    try:
        schedule = lesson_store.save_schedule(week, day_name, lessons)
    except Exception as exc:
        LOGGER.exception("Error in put_schedule")
        return fail("Server error", 500, str(exc))
    return ok("Schedule saved", {
        "weekType": schedule.week_type,
        "day": schedule.day,
        "lessons": [lesson.to_dict() for lesson in schedule.lessons],
    })


# ------------- Run -------------
if __name__ == "__main__":
    app.run(debug=APP_MODE != "prod")
