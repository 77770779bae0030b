"""Notification data models."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Optional
from uuid import UUID


class NotificationType(str, Enum):
    """Notification severity/type shown to the user."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Channel(str, Enum):
    """Delivery channels."""

    IN_APP = "in_app"
    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(str, Enum):
    """Message lifecycle statuses."""

    QUEUED = "queued"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRY = "retry"

    @property
    def is_pending(self) -> bool:
        return self in (
            NotificationStatus.QUEUED,
            NotificationStatus.SENDING,
            NotificationStatus.RETRY,
        )


class DeliveryStatus(str, Enum):
    """Outcome of one (recipient, channel) attempt."""

    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class Recipient:
    """A notification target with contact info and channel preferences."""

    user_id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    # None = accept every channel
    preferred_channels: Optional[list[Channel]] = None

    @property
    def key(self) -> str:
        """Stable identity used for delivery bookkeeping."""
        return self.user_id or self.email or self.phone or ""

    def accepts(self, channel: Channel) -> bool:
        if self.preferred_channels is None:
            return True
        return channel in self.preferred_channels

    def address_for(self, channel: Channel) -> Optional[str]:
        if channel == Channel.IN_APP:
            return self.user_id
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.SMS:
            return self.phone
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "preferred_channels": (
                [c.value for c in self.preferred_channels]
                if self.preferred_channels is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Recipient":
        preferred = data.get("preferred_channels")
        return cls(
            user_id=data.get("user_id"),
            name=data.get("name"),
            email=data.get("email"),
            phone=data.get("phone"),
            preferred_channels=(
                [Channel(c) for c in preferred] if preferred is not None else None
            ),
        )


@dataclass
class DeliveryAttempt:
    """Recorded outcome for one (recipient, channel) pair."""

    recipient_key: str
    channel: Channel
    status: DeliveryStatus
    error: Optional[str] = None
    provider_id: Optional[str] = None
    attempted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_settled(self) -> bool:
        """Delivered or skipped by preference: never attempted again."""
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.SKIPPED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "recipient_key": self.recipient_key,
            "channel": self.channel.value,
            "status": self.status.value,
            "error": self.error,
            "provider_id": self.provider_id,
            "attempted_at": self.attempted_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeliveryAttempt":
        return cls(
            recipient_key=data["recipient_key"],
            channel=Channel(data["channel"]),
            status=DeliveryStatus(data["status"]),
            error=data.get("error"),
            provider_id=data.get("provider_id"),
            attempted_at=datetime.fromisoformat(data["attempted_at"]),
        )


def delivery_key(recipient: Recipient, channel: Channel) -> str:
    return f"{recipient.key}:{channel.value}"


@dataclass
class NotificationRequest:
    """Input to publish(); id, timestamps and status are service-assigned."""

    title: str
    body: str
    recipients: list[Recipient]
    channels: list[Channel] = field(default_factory=lambda: [Channel.IN_APP])
    type: NotificationType = NotificationType.INFO
    template_id: Optional[str] = None
    template_variables: dict[str, Any] = field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    source_module: str = "system"
    company_id: Optional[UUID] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class SendOptions:
    """Options for send_to_users()."""

    channels: list[Channel] = field(default_factory=lambda: [Channel.IN_APP])
    type: NotificationType = NotificationType.INFO
    template_id: Optional[str] = None
    template_variables: dict[str, Any] = field(default_factory=dict)
    scheduled_at: Optional[datetime] = None
    source_module: str = "system"
    company_id: Optional[UUID] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationMessage:
    """A single multi-channel notification."""

    id: UUID
    type: NotificationType
    title: str
    body: str
    channels: list[Channel]
    recipients: list[Recipient]
    status: NotificationStatus
    source_module: str
    created_at: datetime
    template_id: Optional[str] = None
    retry_count: int = 0
    scheduled_at: Optional[datetime] = None
    company_id: Optional[UUID] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    deliveries: dict[str, DeliveryAttempt] = field(default_factory=dict)

    def pairs(self) -> Iterator[tuple[Recipient, Channel]]:
        """Every (recipient, channel) pair this message targets."""
        for recipient in self.recipients:
            for channel in self.channels:
                yield recipient, channel

    def outstanding(self, channel: Optional[Channel] = None) -> list[tuple[Recipient, Channel]]:
        """Pairs with no recorded attempt yet."""
        return [
            (recipient, ch)
            for recipient, ch in self.pairs()
            if (channel is None or ch == channel)
            and delivery_key(recipient, ch) not in self.deliveries
        ]

    def record(self, attempt: DeliveryAttempt) -> None:
        self.deliveries[f"{attempt.recipient_key}:{attempt.channel.value}"] = attempt

    @property
    def is_complete(self) -> bool:
        """Every pair delivered or skipped."""
        for recipient, channel in self.pairs():
            attempt = self.deliveries.get(delivery_key(recipient, channel))
            if attempt is None or not attempt.is_settled:
                return False
        return True

    @property
    def has_failures(self) -> bool:
        return any(a.status == DeliveryStatus.FAILED for a in self.deliveries.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "type": self.type.value,
            "title": self.title,
            "body": self.body,
            "channels": [c.value for c in self.channels],
            "recipients": [r.to_dict() for r in self.recipients],
            "status": self.status.value,
            "source_module": self.source_module,
            "created_at": self.created_at.isoformat(),
            "template_id": self.template_id,
            "retry_count": self.retry_count,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "company_id": str(self.company_id) if self.company_id else None,
            "metadata": self.metadata,
            "deliveries": [a.to_dict() for a in self.deliveries.values()],
        }


@dataclass
class NotificationTemplate:
    """Reusable content with named variables (Jinja2 syntax)."""

    id: str
    name: str
    subject: str
    body: str
    channels: list[Channel] = field(default_factory=lambda: list(Channel))
    is_active: bool = True


@dataclass
class DeliveryStats:
    """Message counts for a time window."""

    delivered: int = 0
    failed: int = 0
    pending: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"delivered": self.delivered, "failed": self.failed, "pending": self.pending}
