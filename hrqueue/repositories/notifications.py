"""Repository for notification messages.

InMemoryNotificationStore backs the default configuration and tests;
NotificationRepository stores messages in Postgres with recipients and
per-pair delivery attempts as JSONB.
"""

import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

import structlog

from hrqueue.exceptions import StoreError
from hrqueue.repositories.utils import ensure_json, to_jsonb
from hrqueue.services.notifications.models import (
    Channel,
    DeliveryAttempt,
    NotificationMessage,
    NotificationStatus,
    NotificationType,
    Recipient,
)

logger = structlog.get_logger(__name__)


class NotificationStore(ABC):
    """Durable record of notification messages."""

    @abstractmethod
    async def create(self, message: NotificationMessage) -> NotificationMessage:
        ...

    @abstractmethod
    async def get(self, message_id: UUID) -> Optional[NotificationMessage]:
        ...

    @abstractmethod
    async def save(self, message: NotificationMessage) -> NotificationMessage:
        ...

    @abstractmethod
    async def list_by_status(
        self, status: NotificationStatus, limit: int = 500, offset: int = 0
    ) -> list[NotificationMessage]:
        """Messages in a status, oldest first (ties by id so pages are stable)."""
        ...

    @abstractmethod
    async def list_due(self, now: datetime, limit: int) -> list[NotificationMessage]:
        """Pending messages whose scheduled time has passed, oldest first."""
        ...

    @abstractmethod
    async def status_counts(
        self, start: datetime, end: datetime
    ) -> dict[NotificationStatus, int]:
        """Message counts by status for messages created in [start, end)."""
        ...


def _is_due(message: NotificationMessage, now: datetime) -> bool:
    if not message.status.is_pending:
        return False
    return message.scheduled_at is None or message.scheduled_at <= now


class InMemoryNotificationStore(NotificationStore):
    """Process-local message store."""

    def __init__(self):
        self._messages: dict[UUID, NotificationMessage] = {}

    async def create(self, message: NotificationMessage) -> NotificationMessage:
        if message.id in self._messages:
            raise StoreError(f"Notification {message.id} already exists")
        self._messages[message.id] = copy.deepcopy(message)
        return message

    async def get(self, message_id: UUID) -> Optional[NotificationMessage]:
        message = self._messages.get(message_id)
        return copy.deepcopy(message) if message else None

    async def save(self, message: NotificationMessage) -> NotificationMessage:
        if message.id not in self._messages:
            raise StoreError(f"Notification {message.id} not found")
        self._messages[message.id] = copy.deepcopy(message)
        return message

    async def list_by_status(
        self, status: NotificationStatus, limit: int = 500, offset: int = 0
    ) -> list[NotificationMessage]:
        matches = [m for m in self._messages.values() if m.status == status]
        matches.sort(key=lambda m: (m.created_at, str(m.id)))
        return [copy.deepcopy(m) for m in matches[offset : offset + limit]]

    async def list_due(self, now: datetime, limit: int) -> list[NotificationMessage]:
        due = [m for m in self._messages.values() if _is_due(m, now)]
        due.sort(key=lambda m: m.created_at)
        return [copy.deepcopy(m) for m in due[:limit]]

    async def status_counts(
        self, start: datetime, end: datetime
    ) -> dict[NotificationStatus, int]:
        counts = {status: 0 for status in NotificationStatus}
        for message in self._messages.values():
            if start <= message.created_at < end:
                counts[message.status] += 1
        return counts


class NotificationRepository(NotificationStore):
    """Postgres-backed message store (asyncpg pool)."""

    def __init__(self, pool):
        self._pool = pool

    async def create(self, message: NotificationMessage) -> NotificationMessage:
        query = """
            INSERT INTO notification_messages (
                id, type, title, body, template_id, channels, recipients,
                status, retry_count, scheduled_at, source_module, company_id,
                created_at, metadata, deliveries
            ) VALUES (
                $1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8, $9, $10, $11,
                $12, $13, $14::jsonb, $15::jsonb
            )
        """
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    query,
                    message.id,
                    message.type.value,
                    message.title,
                    message.body,
                    message.template_id,
                    to_jsonb([c.value for c in message.channels]),
                    to_jsonb([r.to_dict() for r in message.recipients]),
                    message.status.value,
                    message.retry_count,
                    message.scheduled_at,
                    message.source_module,
                    message.company_id,
                    message.created_at,
                    to_jsonb(message.metadata),
                    to_jsonb([a.to_dict() for a in message.deliveries.values()]),
                )
        except Exception as e:
            logger.error(
                "notification_store_create_failed",
                message_id=str(message.id),
                error=str(e),
            )
            raise StoreError(str(e)) from e
        return message

    async def get(self, message_id: UUID) -> Optional[NotificationMessage]:
        query = "SELECT * FROM notification_messages WHERE id = $1"
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, message_id)
        return self._row_to_message(row) if row else None

    async def save(self, message: NotificationMessage) -> NotificationMessage:
        query = """
            UPDATE notification_messages SET
                status = $2,
                retry_count = $3,
                scheduled_at = $4,
                metadata = $5::jsonb,
                deliveries = $6::jsonb,
                updated_at = NOW()
            WHERE id = $1
            RETURNING id
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                query,
                message.id,
                message.status.value,
                message.retry_count,
                message.scheduled_at,
                to_jsonb(message.metadata),
                to_jsonb([a.to_dict() for a in message.deliveries.values()]),
            )
        if not row:
            raise StoreError(f"Notification {message.id} not found")
        return message

    async def list_by_status(
        self, status: NotificationStatus, limit: int = 500, offset: int = 0
    ) -> list[NotificationMessage]:
        query = """
            SELECT * FROM notification_messages
            WHERE status = $1
            ORDER BY created_at, id
            LIMIT $2 OFFSET $3
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, status.value, limit, offset)
        return [self._row_to_message(row) for row in rows]

    async def list_due(self, now: datetime, limit: int) -> list[NotificationMessage]:
        query = """
            SELECT * FROM notification_messages
            WHERE status IN ('queued', 'sending', 'retry')
              AND (scheduled_at IS NULL OR scheduled_at <= $1)
            ORDER BY created_at
            LIMIT $2
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, now, limit)
        return [self._row_to_message(row) for row in rows]

    async def status_counts(
        self, start: datetime, end: datetime
    ) -> dict[NotificationStatus, int]:
        query = """
            SELECT status, COUNT(*) AS n FROM notification_messages
            WHERE created_at >= $1 AND created_at < $2
            GROUP BY status
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, start, end)
        counts = {status: 0 for status in NotificationStatus}
        for row in rows:
            counts[NotificationStatus(row["status"])] = row["n"]
        return counts

    def _row_to_message(self, row) -> NotificationMessage:
        """Convert a database row to a NotificationMessage."""
        message = NotificationMessage(
            id=row["id"],
            type=NotificationType(row["type"]),
            title=row["title"],
            body=row["body"],
            channels=[Channel(c) for c in ensure_json(row["channels"]) or []],
            recipients=[
                Recipient.from_dict(r) for r in ensure_json(row["recipients"]) or []
            ],
            status=NotificationStatus(row["status"]),
            source_module=row["source_module"],
            created_at=row["created_at"],
            template_id=row["template_id"],
            retry_count=row["retry_count"],
            scheduled_at=row["scheduled_at"],
            company_id=row["company_id"],
            metadata=ensure_json(row["metadata"]) or {},
        )
        for attempt in ensure_json(row["deliveries"]) or []:
            message.record(DeliveryAttempt.from_dict(attempt))
        return message
