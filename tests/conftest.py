import os
import tempfile

import pytest

_DATA_DIR = tempfile.mkdtemp(prefix="notifier-tests-")
os.environ["DATA_DIR"] = _DATA_DIR
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DATA_DIR, 'test.db')}"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)

from helpers import FakeLessonStore, RecordingSender  # noqa: E402
from notifications.models import Recipient  # noqa: E402
from notifications.service import DispatchEngine  # noqa: E402


@pytest.fixture
def lesson_store():
    return FakeLessonStore()


@pytest.fixture
def senders():
    return {
        "push": RecordingSender("push"),
        "email": RecordingSender("email"),
        "chat": RecordingSender("chat"),
    }


@pytest.fixture
def engine(senders):
    dispatch = DispatchEngine(senders, send_timeout=2, max_workers=4)
    yield dispatch
    dispatch.close()


@pytest.fixture
def recipients():
    return [
        Recipient(email="a@example.com", recipient_id="1"),
        Recipient(push_token="token-1", recipient_id="2"),
        Recipient(chat_id="555", recipient_id="3"),
    ]
