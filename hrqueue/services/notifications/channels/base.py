"""Base protocol and result type for external channel senders."""

from dataclasses import dataclass
from typing import Optional, Protocol

from hrqueue.services.notifications.models import (
    Channel,
    NotificationMessage,
    Recipient,
)


@dataclass
class SendResult:
    """Outcome of one transport call."""

    ok: bool
    message_id: Optional[str] = None
    error: Optional[str] = None
    status_code: Optional[int] = None


class ChannelSender(Protocol):
    """Transport for one external channel (email, SMS)."""

    channel: Channel

    async def send(
        self, message: NotificationMessage, recipient: Recipient
    ) -> SendResult:
        """Deliver message to one recipient. Must not raise for HTTP errors."""
        ...


RETRYABLE_STATUS = {429, 500, 502, 503, 504}
