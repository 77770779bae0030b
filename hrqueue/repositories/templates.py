"""Notification template lookup. Templates are edited out-of-band."""

from abc import ABC, abstractmethod
from typing import Optional

from hrqueue.repositories.utils import ensure_json
from hrqueue.services.notifications.models import Channel, NotificationTemplate


class TemplateStore(ABC):
    @abstractmethod
    async def get(self, template_id: str) -> Optional[NotificationTemplate]:
        ...


class InMemoryTemplateStore(TemplateStore):
    def __init__(self):
        self._templates: dict[str, NotificationTemplate] = {}

    def add(self, template: NotificationTemplate) -> None:
        self._templates[template.id] = template

    async def get(self, template_id: str) -> Optional[NotificationTemplate]:
        return self._templates.get(template_id)


class TemplateRepository(TemplateStore):
    def __init__(self, pool):
        self._pool = pool

    async def get(self, template_id: str) -> Optional[NotificationTemplate]:
        query = """
            SELECT id, name, subject, body, channels, is_active
            FROM notification_templates
            WHERE id = $1
        """
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(query, template_id)
        if not row:
            return None
        return NotificationTemplate(
            id=row["id"],
            name=row["name"],
            subject=row["subject"],
            body=row["body"],
            channels=[Channel(c) for c in ensure_json(row["channels"]) or []],
            is_active=row["is_active"],
        )
