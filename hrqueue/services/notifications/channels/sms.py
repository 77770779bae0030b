"""SMS sender using the Twilio Messages API."""

import asyncio
from typing import Optional

import httpx
import structlog

from hrqueue.services.notifications.channels.base import RETRYABLE_STATUS, SendResult
from hrqueue.services.notifications.models import Channel, NotificationMessage, Recipient

logger = structlog.get_logger(__name__)


class TwilioSmsSender:
    """Sends notifications as SMS through Twilio, retrying once on 429/5xx."""

    channel = Channel.SMS
    TWILIO_API = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
    MAX_MESSAGE_LENGTH = 1600  # Twilio concatenated SMS limit

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
        retry_delay: float = 1.0,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.timeout = timeout
        self.retry_delay = retry_delay

    async def send(
        self, message: NotificationMessage, recipient: Recipient
    ) -> SendResult:
        if not recipient.phone:
            return SendResult(ok=False, error="recipient has no phone number")

        data = {
            "To": recipient.phone,
            "From": self.from_number,
            "Body": self._format_body(message),
        }
        url = self.TWILIO_API.format(sid=self.account_sid)
        last_error: Optional[str] = None
        status_code: Optional[int] = None

        for attempt in range(2):  # Retry once
            try:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(
                        url, data=data, auth=(self.account_sid, self.auth_token)
                    )

                status_code = resp.status_code
                if resp.status_code in (200, 201):
                    sid = None
                    try:
                        sid = resp.json().get("sid")
                    except ValueError:
                        pass
                    logger.info("sms_sent", message_id=str(message.id), sid=sid)
                    return SendResult(ok=True, message_id=sid, status_code=status_code)

                last_error = f"HTTP {resp.status_code}: {resp.text[:200]}"
                if resp.status_code not in RETRYABLE_STATUS:
                    logger.warning(
                        "sms_rejected",
                        message_id=str(message.id),
                        status=resp.status_code,
                    )
                    return SendResult(ok=False, error=last_error, status_code=status_code)

                logger.warning(
                    "sms_error",
                    message_id=str(message.id),
                    status=resp.status_code,
                    attempt=attempt,
                )

            except httpx.HTTPError as e:
                last_error = str(e) or type(e).__name__
                logger.warning(
                    "sms_exception",
                    message_id=str(message.id),
                    error=last_error,
                    attempt=attempt,
                )

            if attempt == 0:
                await asyncio.sleep(self.retry_delay)

        logger.error("sms_failed", message_id=str(message.id), error=last_error)
        return SendResult(ok=False, error=last_error, status_code=status_code)

    def _format_body(self, message: NotificationMessage) -> str:
        text = f"{message.title}: {message.body}" if message.body else message.title
        if len(text) > self.MAX_MESSAGE_LENGTH:
            text = text[: self.MAX_MESSAGE_LENGTH - 3] + "..."
        return text
