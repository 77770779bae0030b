"""Recipient lookup: user id -> contact info and channel preferences."""

from abc import ABC, abstractmethod
from typing import Iterable

import structlog

from hrqueue.repositories.utils import ensure_json
from hrqueue.services.notifications.models import Channel, Recipient

logger = structlog.get_logger(__name__)


class RecipientDirectory(ABC):
    @abstractmethod
    async def resolve_many(self, user_ids: Iterable[str]) -> dict[str, Recipient]:
        """Resolve user ids. Ids with no profile are absent from the result."""
        ...


class InMemoryRecipientDirectory(RecipientDirectory):
    def __init__(self, recipients: Iterable[Recipient] = ()):
        self._recipients: dict[str, Recipient] = {}
        for recipient in recipients:
            self.add(recipient)

    def add(self, recipient: Recipient) -> None:
        if not recipient.user_id:
            raise ValueError("Directory entries need a user_id")
        self._recipients[recipient.user_id] = recipient

    async def resolve_many(self, user_ids: Iterable[str]) -> dict[str, Recipient]:
        return {
            user_id: self._recipients[user_id]
            for user_id in user_ids
            if user_id in self._recipients
        }


class UserProfileDirectory(RecipientDirectory):
    """Reads the user_profiles table (read-only)."""

    def __init__(self, pool):
        self._pool = pool

    async def resolve_many(self, user_ids: Iterable[str]) -> dict[str, Recipient]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        query = """
            SELECT user_id, full_name, email, phone, notification_channels
            FROM user_profiles
            WHERE user_id = ANY($1::text[])
        """
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(query, ids)

        resolved = {}
        for row in rows:
            channels = ensure_json(row["notification_channels"])
            preferred = None
            if channels is not None:
                preferred = []
                for value in channels:
                    try:
                        preferred.append(Channel(value))
                    except ValueError:
                        logger.warning(
                            "unknown_preferred_channel",
                            user_id=row["user_id"],
                            channel=value,
                        )
            resolved[row["user_id"]] = Recipient(
                user_id=row["user_id"],
                name=row["full_name"],
                email=row["email"],
                phone=row["phone"],
                preferred_channels=preferred,
            )
        return resolved
