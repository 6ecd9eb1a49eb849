import threading

from helpers import FakeDirectory, RecordingSender
from notifications.models import Recipient
from notifications.service import DispatchEngine, create_request

REQUEST = create_request("Lesson starting: Math", ["09:00-09:45 - Math"], data={"kind": "lesson_reminder"})


def test_create_request_joins_body_lines():
    request = create_request("Title", ["one", "", "two"])

    assert request.body == "one\n\ntwo"
    assert request.data == {}


def test_dispatch_one_sends_every_configured_channel(engine, senders):
    recipient = Recipient(push_token="tok", email="a@example.com", chat_id="42")

    outcome = engine.dispatch_one(recipient, REQUEST)

    assert sorted(c.channel for c in outcome.channels) == ["chat", "email", "push"]
    assert outcome.delivered
    assert senders["push"].sent == [("tok", REQUEST)]
    assert senders["email"].sent == [("a@example.com", REQUEST)]
    assert senders["chat"].sent == [("42", REQUEST)]


def test_dispatch_one_omits_absent_channels(engine, senders):
    outcome = engine.dispatch_one(Recipient(email="a@example.com"), REQUEST)

    assert [c.channel for c in outcome.channels] == ["email"]
    assert senders["push"].sent == []
    assert senders["chat"].sent == []


def test_channel_exception_is_recorded_not_raised(senders):
    senders["email"] = RecordingSender("email", error=ConnectionError("smtp down"))
    engine = DispatchEngine(senders, send_timeout=2)
    try:
        outcome = engine.dispatch_one(Recipient(email="a@example.com", chat_id="42"), REQUEST)
    finally:
        engine.close()

    by_channel = {c.channel: c for c in outcome.channels}
    assert by_channel["chat"].success
    assert not by_channel["email"].success
    assert "smtp down" in by_channel["email"].error
    assert outcome.failed_channels == ["email"]
    assert not outcome.delivered


def test_multicast_counts_valid_recipients_and_failures(senders):
    senders["email"] = RecordingSender("email", result=False)
    engine = DispatchEngine(senders, send_timeout=2)
    try:
        report = engine.dispatch_multicast(
            [Recipient(email="a@x"), Recipient(push_token="t1"), Recipient()],
            REQUEST,
        )
    finally:
        engine.close()

    assert report.total == 2
    assert report.succeeded == 1
    assert report.failed == 1
    failed = [o for o in report.outcomes if not o.delivered]
    assert len(failed) == 1
    assert failed[0].recipient.email == "a@x"
    assert failed[0].failed_channels == ["email"]
    assert report.summary()["failures"][0]["channels"] == ["email"]


def test_multicast_isolates_recipient_failures(senders):
    senders["chat"] = RecordingSender("chat", result=lambda chat_id: chat_id != "bad")
    engine = DispatchEngine(senders, send_timeout=2)
    recipients = [Recipient(chat_id=str(i)) for i in range(5)] + [Recipient(chat_id="bad")]
    try:
        report = engine.dispatch_multicast(recipients, REQUEST)
    finally:
        engine.close()

    assert report.total == 6
    assert report.succeeded == 5
    assert report.failed == 1
    assert len(senders["chat"].sent) == 6


def test_multicast_records_unexpected_dispatch_error(engine, monkeypatch):
    original = engine.dispatch_one

    def flaky(recipient, request):
        if recipient.recipient_id == "boom":
            raise RuntimeError("unexpected")
        return original(recipient, request)

    monkeypatch.setattr(engine, "dispatch_one", flaky)

    report = engine.dispatch_multicast(
        [Recipient(email="a@example.com", recipient_id="boom"), Recipient(chat_id="1", recipient_id="ok")],
        REQUEST,
    )

    assert report.total == 2
    assert report.succeeded == 1
    assert report.failed == 1
    errored = [o for o in report.outcomes if o.error]
    assert errored[0].recipient.recipient_id == "boom"
    assert "unexpected" in errored[0].error


def test_hanging_channel_times_out_without_blocking_others(senders):
    slow = RecordingSender("push", block=True)
    senders["push"] = slow
    engine = DispatchEngine(senders, send_timeout=0.2)
    try:
        report = engine.dispatch_multicast(
            [Recipient(push_token="slow", email="a@example.com"), Recipient(chat_id="7")],
            REQUEST,
        )
    finally:
        slow.release.set()
        engine.close()

    assert report.total == 2
    assert report.succeeded == 1
    slow_outcome = next(o for o in report.outcomes if o.recipient.push_token == "slow")
    push = next(c for c in slow_outcome.channels if c.channel == "push")
    email = next(c for c in slow_outcome.channels if c.channel == "email")
    assert not push.success
    assert "timed out" in push.error
    assert email.success


def test_multicast_with_no_valid_recipients_returns_empty_report(engine, senders):
    report = engine.dispatch_multicast([Recipient(), None], REQUEST)

    assert (report.total, report.succeeded, report.failed) == (0, 0, 0)
    assert all(not s.sent for s in senders.values())


def test_unconfigured_channel_is_not_usable(senders):
    del senders["push"]
    engine = DispatchEngine(senders, send_timeout=2)
    try:
        report = engine.dispatch_multicast([Recipient(push_token="tok")], REQUEST)
    finally:
        engine.close()

    assert report.total == 0


def test_broadcast_to_channel_filters_and_narrows_recipients(senders):
    directory = FakeDirectory(
        [
            Recipient(chat_id="1", email="a@example.com"),
            Recipient(email="b@example.com"),
            Recipient(chat_id="2"),
        ]
    )
    engine = DispatchEngine(senders, directory, send_timeout=2)
    try:
        report = engine.broadcast_to_channel("chat", REQUEST)
    finally:
        engine.close()

    assert directory.calls == ["chat"]
    assert report.total == 2
    assert sorted(address for address, _ in senders["chat"].sent) == ["1", "2"]
    assert senders["email"].sent == []


def test_broadcast_with_no_matching_recipients_is_empty(senders):
    engine = DispatchEngine(senders, FakeDirectory([Recipient(email="a@example.com")]), send_timeout=2)
    try:
        report = engine.broadcast_to_channel("push", REQUEST)
    finally:
        engine.close()

    assert (report.total, report.succeeded, report.failed) == (0, 0, 0)


def test_chat_broadcast_falls_back_to_configured_chat(senders):
    engine = DispatchEngine(senders, FakeDirectory([]), send_timeout=2, fallback_chat_id="-100")
    try:
        report = engine.broadcast_to_channel("chat", REQUEST)
    finally:
        engine.close()

    assert report.total == 1
    assert report.succeeded == 1
    assert senders["chat"].sent == [("-100", REQUEST)]


def test_broadcast_propagates_directory_failure(senders):
    engine = DispatchEngine(senders, FakeDirectory(error=ConnectionError("db down")), send_timeout=2)
    try:
        try:
            engine.broadcast_to_channel("email", REQUEST)
        except ConnectionError:
            pass
        else:
            raise AssertionError("Expected directory failure to propagate")
    finally:
        engine.close()


def test_multicast_sends_to_recipients_concurrently(senders):
    barrier = threading.Barrier(2)
    senders["chat"] = RecordingSender("chat", result=lambda chat_id: barrier.wait(timeout=3) is not None)
    engine = DispatchEngine(senders, send_timeout=1)
    try:
        report = engine.dispatch_multicast([Recipient(chat_id="1"), Recipient(chat_id="2")], REQUEST)
    finally:
        barrier.abort()
        engine.close()

    assert report.total == 2
    assert report.succeeded == 2


def test_send_queued_behind_hung_channels_is_reported_as_not_started(senders):
    for sender in senders.values():
        sender.block = True
    engine = DispatchEngine(senders, send_timeout=0.2, max_workers=1)
    try:
        hung = engine.dispatch_one(Recipient(push_token="t", email="a@example.com", chat_id="1"), REQUEST)
        queued = engine.dispatch_one(Recipient(email="b@example.com"), REQUEST)
    finally:
        for sender in senders.values():
            sender.release.set()
        engine.close()

    assert all("timed out" in c.error for c in hung.channels)
    assert "not started" in queued.channels[0].error
    assert [address for address, _ in senders["email"].sent] == ["a@example.com"]
