"""External channel senders (email, SMS)."""

from hrqueue.config import Settings
from hrqueue.services.notifications.channels.base import ChannelSender, SendResult
from hrqueue.services.notifications.channels.email import ResendEmailSender
from hrqueue.services.notifications.channels.sms import TwilioSmsSender
from hrqueue.services.notifications.models import Channel


def build_senders(settings: Settings) -> dict[Channel, ChannelSender]:
    """Construct the senders whose credentials are configured."""
    senders: dict[Channel, ChannelSender] = {}
    if settings.email_enabled:
        senders[Channel.EMAIL] = ResendEmailSender(
            api_key=settings.resend_api_key,
            from_address=settings.email_from_address,
            timeout=settings.transport_timeout_s,
        )
    if settings.sms_enabled:
        senders[Channel.SMS] = TwilioSmsSender(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            timeout=settings.transport_timeout_s,
        )
    return senders


__all__ = [
    "ChannelSender",
    "SendResult",
    "ResendEmailSender",
    "TwilioSmsSender",
    "build_senders",
]
