"""Email sender using the Resend HTTP API."""

import asyncio
import html
from typing import Optional

import httpx
import structlog

from hrqueue.services.notifications.channels.base import RETRYABLE_STATUS, SendResult
from hrqueue.services.notifications.models import (
    Channel,
    NotificationMessage,
    NotificationType,
    Recipient,
)

logger = structlog.get_logger(__name__)


# Header colour per notification type
TYPE_COLORS = {
    NotificationType.INFO: "#1e40af",
    NotificationType.SUCCESS: "#15803d",
    NotificationType.WARNING: "#ea580c",
    NotificationType.ERROR: "#dc2626",
}


class ResendEmailSender:
    """
    Sends notifications as email through Resend.

    Features:
    - HTML body with a type-coloured header plus a plain-text part
    - One retry on transient errors (429, 5xx, timeouts)
    - 4xx responses fail immediately
    """

    channel = Channel.EMAIL
    RESEND_API = "https://api.resend.com/emails"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        timeout: float = 10.0,
        retry_delay: float = 1.0,
    ):
        """
        Initialize email sender.

        Args:
            api_key: Resend API key
            from_address: Sender address
            timeout: Request timeout in seconds
            retry_delay: Pause before the single retry
        """
        self.api_key = api_key
        self.from_address = from_address
        self.timeout = timeout
        self.retry_delay = retry_delay

    async def send(
        self, message: NotificationMessage, recipient: Recipient
    ) -> SendResult:
        if not recipient.email:
            return SendResult(ok=False, error="recipient has no email address")

        payload = {
            "from": self.from_address,
            "to": [recipient.email],
            "subject": message.title,
            "html": self._format_html(message, recipient),
            "text": message.body,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        return await self._post(payload, headers, str(message.id))

    def _format_html(self, message: NotificationMessage, recipient: Recipient) -> str:
        color = TYPE_COLORS.get(message.type, TYPE_COLORS[NotificationType.INFO])
        greeting = f"<p>Hi {html.escape(recipient.name)},</p>" if recipient.name else ""
        paragraphs = "".join(
            f"<p>{html.escape(line)}</p>" for line in message.body.splitlines() if line.strip()
        )
        return (
            '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
            f'<div style="background: {color}; color: white; padding: 20px;">'
            f"<h2>{html.escape(message.title)}</h2></div>"
            f'<div style="padding: 20px;">{greeting}{paragraphs}</div>'
            "</div>"
        )

    async def _post(
        self, payload: dict, headers: dict, message_id: str
    ) -> SendResult:
        last_error: Optional[str] = None
        status_code: Optional[int] = None

        for attempt in range(2):  # Retry once
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.RESEND_API, json=payload, headers=headers)

                status_code = resp.status_code
                if 200 <= resp.status_code < 300:
                    provider_id = None
                    try:
                        provider_id = resp.json().get("id")
                    except ValueError:
                        pass
                    logger.info("email_sent", message_id=message_id, provider_id=provider_id)
                    return SendResult(ok=True, message_id=provider_id, status_code=status_code)

                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                if resp.status_code not in RETRYABLE_STATUS:
                    logger.warning(
                        "email_rejected",
                        message_id=message_id,
                        status=resp.status_code,
                        response=resp.text[:200],
                    )
                    return SendResult(ok=False, error=last_error, status_code=status_code)

                logger.warning(
                    "email_error",
                    message_id=message_id,
                    status=resp.status_code,
                    attempt=attempt,
                )

            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "email_exception",
                    message_id=message_id,
                    error=last_error,
                    attempt=attempt,
                )

            if attempt == 0:
                await asyncio.sleep(self.retry_delay)

        logger.error("email_failed", message_id=message_id, error=last_error)
        return SendResult(ok=False, error=last_error, status_code=status_code)
