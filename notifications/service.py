from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from .config import CHANNEL_CHAT, VALID_CHANNELS
from .models import ChannelOutcome, DispatchReport, NotificationRequest, Recipient, RecipientOutcome

LOGGER = logging.getLogger(__name__)


class ChannelSender(Protocol):
    channel: str

    def send(self, address: str, request: NotificationRequest) -> bool:
        ...


class RecipientSource(Protocol):
    def list_recipients(self, channel: Optional[str] = None) -> List[Recipient]:
        ...


def create_request(title: str, body_lines: Iterable[str], *, data: Optional[Dict[str, str]] = None) -> NotificationRequest:
    body = "\n".join(body_lines)
    return NotificationRequest(title=title, body=body, data=dict(data or {}))


class DispatchEngine:
    """Fan one notification out to many recipients over every configured channel.

    Sends run on two thread pools: one per recipient, one per
    recipient-channel pair. Every failure is converted into a
    ``ChannelOutcome`` so no sender exception reaches the caller, and a
    send that outlives ``send_timeout`` is recorded as failed while its
    siblings carry on.
    """

    def __init__(
        self,
        senders: Mapping[str, ChannelSender],
        directory: Optional[RecipientSource] = None,
        *,
        send_timeout: float = 15.0,
        max_workers: int = 8,
        fallback_chat_id: Optional[str] = None,
    ):
        self.senders = dict(senders)
        self.directory = directory
        self.send_timeout = send_timeout
        self.fallback_chat_id = fallback_chat_id
        self._recipient_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch-recipient")
        self._channel_pool = ThreadPoolExecutor(
            max_workers=max_workers * len(VALID_CHANNELS), thread_name_prefix="dispatch-channel"
        )

    def usable_channels(self, recipient: Recipient) -> List[str]:
        return [channel for channel in recipient.channels if channel in self.senders]

    def _send(self, channel: str, address: str, request: NotificationRequest) -> bool:
        return bool(self.senders[channel].send(address, request))

    def dispatch_one(self, recipient: Recipient, request: NotificationRequest) -> RecipientOutcome:
        futures: Dict[str, Future] = {}
        for channel in self.usable_channels(recipient):
            address = recipient.address_for(channel)
            futures[channel] = self._channel_pool.submit(self._send, channel, address, request)

        _, pending = wait(futures.values(), timeout=self.send_timeout)

        outcome = RecipientOutcome(recipient=recipient)
        for channel, future in futures.items():
            if future in pending:
                if future.cancel():
                    error = f"not started within {self.send_timeout:g}s, channel pool busy"
                else:
                    error = f"timed out after {self.send_timeout:g}s"
                outcome.channels.append(ChannelOutcome(channel, False, error))
                LOGGER.warning("%s send to %s failed: %s", channel, recipient.label, error)
                continue
            try:
                delivered = future.result()
            except Exception as exc:
                LOGGER.exception("%s send to %s raised", channel, recipient.label)
                outcome.channels.append(ChannelOutcome(channel, False, f"{type(exc).__name__}: {exc}"))
                continue
            outcome.channels.append(
                ChannelOutcome(channel, delivered, None if delivered else f"{channel} delivery failed")
            )
        return outcome

    def dispatch_multicast(self, recipients: Sequence[Recipient], request: NotificationRequest) -> DispatchReport:
        valid = [recipient for recipient in recipients if recipient and self.usable_channels(recipient)]
        if not valid:
            LOGGER.info("No valid recipients for '%s'", request.title)
            return DispatchReport()

        LOGGER.info("Sending '%s' to %d recipients", request.title, len(valid))
        futures = [(recipient, self._recipient_pool.submit(self.dispatch_one, recipient, request)) for recipient in valid]

        outcomes: List[RecipientOutcome] = []
        for recipient, future in futures:
            try:
                outcomes.append(future.result())
            except Exception as exc:
                LOGGER.exception("Dispatch to %s failed", recipient.label)
                outcomes.append(RecipientOutcome(recipient=recipient, error=f"{type(exc).__name__}: {exc}"))

        report = DispatchReport.from_outcomes(outcomes)
        LOGGER.info(
            "Dispatched '%s': %d/%d succeeded, %d failed",
            request.title,
            report.succeeded,
            report.total,
            report.failed,
        )
        return report

    def broadcast_to_channel(self, channel: str, request: NotificationRequest) -> DispatchReport:
        if channel not in VALID_CHANNELS:
            raise ValueError(f"Unknown channel {channel!r}")
        if self.directory is None:
            raise RuntimeError("broadcast_to_channel needs a recipient directory")

        recipients = [r.only(channel) for r in self.directory.list_recipients(channel)]
        if not recipients and channel == CHANNEL_CHAT and self.fallback_chat_id:
            LOGGER.info("No registered chat recipients, using the configured fallback chat id")
            recipients = [Recipient(chat_id=self.fallback_chat_id, recipient_id="fallback")]
        if not recipients:
            LOGGER.info("No %s recipients registered, nothing to broadcast", channel)
            return DispatchReport()
        return self.dispatch_multicast(recipients, request)

    def close(self) -> None:
        self._recipient_pool.shutdown(wait=False, cancel_futures=True)
        self._channel_pool.shutdown(wait=False, cancel_futures=True)


__all__ = ["ChannelSender", "DispatchEngine", "create_request"]
