"""Notification service - multi-channel delivery with tracking.

publish() persists a message, delivers its in-app pairs before returning
and leaves email/SMS pairs to the delivery loop:

    queued -> sending -> delivered | failed
    sending -> retry -> sending  (failed pairs, scheduled with backoff)
    failed -> retry -> sending   (retry_failed_notifications)

A message is delivered only once every (recipient, channel) pair has a
delivered or skipped attempt, and a delivered pair is never sent again.
Failed pairs are retried automatically up to notification_max_retries
times, base * 2^retry_count minutes apart; after that the message is
failed until retried by hand.
"""

import asyncio
import traceback
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional
from uuid import UUID, uuid4

import structlog
from prometheus_client import Counter

from hrqueue.config import Settings, get_settings
from hrqueue.exceptions import NotificationValidationError, UnresolvedRecipientsError
from hrqueue.jobs.models import utcnow
from hrqueue.repositories.notifications import NotificationStore
from hrqueue.repositories.recipients import RecipientDirectory
from hrqueue.repositories.templates import TemplateStore
from hrqueue.services.events import EventBus, Listener, notification_event
from hrqueue.services.events import schemas as events
from hrqueue.services.notifications.channels.base import ChannelSender
from hrqueue.services.notifications.models import (
    Channel,
    DeliveryAttempt,
    DeliveryStats,
    DeliveryStatus,
    NotificationMessage,
    NotificationRequest,
    NotificationStatus,
    Recipient,
    SendOptions,
)
from hrqueue.services.notifications.templates import TemplateRenderer

logger = structlog.get_logger(__name__)

DUE_BATCH_SIZE = 100
RETRY_PAGE_SIZE = 500

NOTIFICATION_DELIVERIES = Counter(
    "hrqueue_notification_deliveries_total",
    "Per-recipient delivery attempts, by channel and outcome",
    ["channel", "status"],
)


class NotificationService:
    """Publishes notifications and tracks per-pair delivery."""

    def __init__(
        self,
        store: NotificationStore,
        bus: EventBus,
        directory: RecipientDirectory,
        templates: TemplateStore,
        senders: Optional[dict[Channel, ChannelSender]] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        renderer: Optional[TemplateRenderer] = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._bus = bus
        self._directory = directory
        self._templates = templates
        self._senders = dict(senders or {})
        self._settings = settings
        self._clock = clock or utcnow
        self._renderer = renderer or TemplateRenderer()

        self._poll_interval = settings.notification_poll_interval_s
        # Message ids being delivered right now (publish or the loop)
        self._inflight: set[UUID] = set()
        self._process_lock = asyncio.Lock()
        self._wake_event = asyncio.Event()
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def channels(self) -> list[Channel]:
        """Channels this service can deliver on."""
        return [Channel.IN_APP, *self._senders.keys()]

    # ------------------------------------------------------------------
    # Publication
    # ------------------------------------------------------------------

    async def publish(self, request: NotificationRequest) -> UUID:
        """
        Publish a notification.

        In-app pairs are delivered (emitted on the bus) before this returns.
        External pairs are handed to the delivery loop. A message scheduled
        in the future waits for the loop entirely.

        Returns:
            The new message id

        Raises:
            NotificationValidationError: Missing title/recipients/channels,
                or an inactive or incompatible template
            TemplateRenderError: Template failed to render
        """
        title, body = await self._validate(request)
        now = self._clock()
        message = NotificationMessage(
            id=uuid4(),
            type=request.type,
            title=title,
            body=body,
            channels=list(dict.fromkeys(request.channels)),
            recipients=list(request.recipients),
            status=NotificationStatus.QUEUED,
            source_module=request.source_module,
            created_at=now,
            template_id=request.template_id,
            scheduled_at=request.scheduled_at,
            company_id=request.company_id,
            metadata=dict(request.metadata),
        )

        self._inflight.add(message.id)
        try:
            await self._store.create(message)
            logger.info(
                "notification_queued",
                message_id=str(message.id),
                channels=[c.value for c in message.channels],
                recipients=len(message.recipients),
                source_module=message.source_module,
            )
            self._bus.emit(events.NOTIFICATION_QUEUED, notification_event(message))

            if message.scheduled_at is not None and message.scheduled_at > now:
                return message.id

            message.status = NotificationStatus.SENDING
            self._deliver_in_app(message)
            self._skip_unreachable(message)
            await self._finalize(message)
        finally:
            self._inflight.discard(message.id)

        if message.outstanding():
            self.wake()
        return message.id

    async def send_to_users(
        self,
        user_ids: Iterable[str],
        title: str,
        body: str,
        options: Optional[SendOptions] = None,
    ) -> UUID:
        """
        Resolve user ids to recipients and publish.

        Ids without a profile are skipped and listed in
        metadata["unresolved_user_ids"].

        Raises:
            UnresolvedRecipientsError: No id could be resolved
        """
        options = options or SendOptions()
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            raise NotificationValidationError("At least one user id is required")

        resolved = await self._directory.resolve_many(ids)
        recipients = [resolved[user_id] for user_id in ids if user_id in resolved]
        unresolved = [user_id for user_id in ids if user_id not in resolved]

        if unresolved:
            logger.warning(
                "notification_recipients_unresolved",
                unresolved=unresolved,
                resolved=len(recipients),
            )
        if not recipients:
            raise UnresolvedRecipientsError(ids)

        metadata = dict(options.metadata)
        if unresolved:
            metadata["unresolved_user_ids"] = unresolved

        return await self.publish(
            NotificationRequest(
                title=title,
                body=body,
                recipients=recipients,
                channels=list(options.channels),
                type=options.type,
                template_id=options.template_id,
                template_variables=dict(options.template_variables),
                scheduled_at=options.scheduled_at,
                source_module=options.source_module,
                company_id=options.company_id,
                metadata=metadata,
            )
        )

    async def _validate(self, request: NotificationRequest) -> tuple[str, str]:
        if not request.recipients:
            raise NotificationValidationError("At least one recipient is required")
        if not request.channels:
            raise NotificationValidationError("At least one channel is required")
        in_app = Channel.IN_APP in request.channels
        for recipient in request.recipients:
            if not recipient.key:
                raise NotificationValidationError(
                    "Recipient needs a user_id, email or phone"
                )
            if in_app and not recipient.user_id:
                raise NotificationValidationError(
                    f"In-app delivery needs a user_id for recipient {recipient.key}"
                )

        title, body = request.title, request.body
        if request.template_id:
            template = await self._templates.get(request.template_id)
            if template is None:
                raise NotificationValidationError(
                    f"Template not found: {request.template_id}"
                )
            if not template.is_active:
                raise NotificationValidationError(
                    f"Template is inactive: {request.template_id}"
                )
            unsupported = [c for c in request.channels if c not in template.channels]
            if unsupported:
                raise NotificationValidationError(
                    f"Template {template.id} does not support channels: "
                    f"{', '.join(c.value for c in unsupported)}"
                )
            title, body = self._renderer.render(template, request.template_variables)

        if not title or not title.strip():
            raise NotificationValidationError("Title is required")
        return title, body or ""

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _deliver_in_app(self, message: NotificationMessage) -> None:
        """Emit one in-app event per outstanding recipient."""
        for recipient, channel in message.outstanding(Channel.IN_APP):
            if not recipient.accepts(channel):
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.SKIPPED,
                    error="channel not in recipient preferences",
                )
                continue
            self._bus.emit(
                events.NOTIFICATION_IN_APP,
                notification_event(
                    message,
                    user_id=recipient.user_id,
                    body=message.body,
                    notification_type=message.type.value,
                ),
            )
            self._record(message, recipient, channel, DeliveryStatus.DELIVERED)

    def _skip_unreachable(self, message: NotificationMessage) -> None:
        """Settle external pairs that preference or missing contact rule out."""
        for recipient, channel in message.outstanding():
            if channel == Channel.IN_APP:
                continue
            if not recipient.accepts(channel):
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.SKIPPED,
                    error="channel not in recipient preferences",
                )
            elif not recipient.address_for(channel):
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.SKIPPED,
                    error=f"no {channel.value} address",
                )

    async def _deliver_external(self, message: NotificationMessage) -> None:
        for recipient, channel in message.outstanding():
            if channel == Channel.IN_APP:
                continue
            sender = self._senders.get(channel)
            if sender is None:
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.FAILED,
                    error=f"{channel.value} channel is not configured",
                )
                continue
            try:
                result = await sender.send(message, recipient)
            except Exception as e:
                logger.error(
                    "notification_sender_error",
                    message_id=str(message.id),
                    channel=channel.value,
                    error=str(e),
                    traceback=traceback.format_exc(),
                )
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.FAILED,
                    error=str(e) or type(e).__name__,
                )
                continue

            if result.ok:
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.DELIVERED,
                    provider_id=result.message_id,
                )
            else:
                self._record(
                    message,
                    recipient,
                    channel,
                    DeliveryStatus.FAILED,
                    error=result.error,
                )

    def _record(
        self,
        message: NotificationMessage,
        recipient: Recipient,
        channel: Channel,
        status: DeliveryStatus,
        error: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> None:
        message.record(
            DeliveryAttempt(
                recipient_key=recipient.key,
                channel=channel,
                status=status,
                error=error,
                provider_id=provider_id,
                attempted_at=self._clock(),
            )
        )
        NOTIFICATION_DELIVERIES.labels(channel=channel.value, status=status.value).inc()

    async def _finalize(self, message: NotificationMessage) -> None:
        """Settle the message status from its attempts and persist it."""
        failures = [
            a.to_dict() for a in message.deliveries.values() if a.status == DeliveryStatus.FAILED
        ]
        if message.is_complete:
            message.status = NotificationStatus.DELIVERED
        elif message.outstanding():
            message.status = NotificationStatus.SENDING
        elif (
            message.has_failures
            and message.retry_count < self._settings.notification_max_retries
        ):
            self._reset_failed(message, self._clock() + self._backoff(message.retry_count + 1))
        else:
            message.status = NotificationStatus.FAILED

        await self._store.save(message)

        if message.status == NotificationStatus.DELIVERED:
            logger.info("notification_delivered", message_id=str(message.id))
            self._bus.emit(events.NOTIFICATION_DELIVERED, notification_event(message))
        elif message.status == NotificationStatus.RETRY:
            logger.info(
                "notification_retry_scheduled",
                message_id=str(message.id),
                retry_count=message.retry_count,
                scheduled_at=message.scheduled_at.isoformat(),
                failed_pairs=len(failures),
            )
            self._bus.emit(
                events.NOTIFICATION_RETRY_SCHEDULED,
                notification_event(
                    message, failures=failures, scheduled_at=message.scheduled_at
                ),
            )
        elif message.status == NotificationStatus.FAILED:
            logger.warning(
                "notification_failed",
                message_id=str(message.id),
                failed_pairs=len(failures),
                retry_count=message.retry_count,
            )
            self._bus.emit(
                events.NOTIFICATION_FAILED,
                notification_event(message, failures=failures),
            )

    def _reset_failed(
        self, message: NotificationMessage, scheduled_at: Optional[datetime]
    ) -> None:
        """Forget failed attempts so those pairs are sent again at scheduled_at."""
        message.deliveries = {
            key: attempt
            for key, attempt in message.deliveries.items()
            if attempt.status != DeliveryStatus.FAILED
        }
        message.status = NotificationStatus.RETRY
        message.retry_count += 1
        message.scheduled_at = scheduled_at

    def _backoff(self, retry_count: int) -> timedelta:
        """Exponential backoff: base * 2^retry_count minutes."""
        return timedelta(
            minutes=self._settings.notification_backoff_base_minutes * (2**retry_count)
        )

    async def process_pending(self) -> int:
        """
        Deliver every due message once.

        Covers scheduled messages whose time has come, messages with external
        pairs outstanding, and messages put back by a retry.

        Returns:
            Number of messages processed.
        """
        async with self._process_lock:
            due = await self._store.list_due(self._clock(), DUE_BATCH_SIZE)
            processed = 0
            for message in due:
                if message.id in self._inflight:
                    continue
                self._inflight.add(message.id)
                try:
                    await self._process(message)
                    processed += 1
                except Exception as e:
                    logger.error(
                        "notification_processing_failed",
                        message_id=str(message.id),
                        error=str(e),
                        traceback=traceback.format_exc(),
                    )
                finally:
                    self._inflight.discard(message.id)
            return processed

    async def _process(self, message: NotificationMessage) -> None:
        message.status = NotificationStatus.SENDING
        self._deliver_in_app(message)
        self._skip_unreachable(message)
        await self._deliver_external(message)
        await self._finalize(message)

    # ------------------------------------------------------------------
    # Retry, stats, subscriptions
    # ------------------------------------------------------------------

    async def retry_failed_notifications(self) -> int:
        """Put every failed message back for delivery. Returns count retried."""
        # Collect first: each retried message leaves the failed status
        failed: list[NotificationMessage] = []
        while True:
            page = await self._store.list_by_status(
                NotificationStatus.FAILED, limit=RETRY_PAGE_SIZE, offset=len(failed)
            )
            failed.extend(page)
            if len(page) < RETRY_PAGE_SIZE:
                break

        retried = 0
        for message in failed:
            self._reset_failed(message, scheduled_at=None)
            await self._store.save(message)
            retried += 1
            logger.info(
                "notification_retry_scheduled",
                message_id=str(message.id),
                retry_count=message.retry_count,
                manual=True,
            )

        if retried:
            self.wake()
        return retried

    async def get_delivery_stats(self, start: datetime, end: datetime) -> DeliveryStats:
        """Message counts by outcome for messages created in [start, end)."""
        counts = await self._store.status_counts(start, end)
        return DeliveryStats(
            delivered=counts.get(NotificationStatus.DELIVERED, 0),
            failed=counts.get(NotificationStatus.FAILED, 0),
            pending=sum(n for status, n in counts.items() if status.is_pending),
        )

    async def get_message(self, message_id: UUID) -> Optional[NotificationMessage]:
        return await self._store.get(message_id)

    def subscribe(self, event_type: str, callback: Listener) -> None:
        self._bus.on(event_type, callback)

    def unsubscribe(self, event_type: str, callback: Listener) -> bool:
        return self._bus.off(event_type, callback)

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    def wake(self) -> None:
        self._wake_event.set()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(
            self._delivery_loop(), name="notification-delivery"
        )
        logger.info(
            "notification_service_started",
            channels=[c.value for c in self.channels],
            poll_interval_s=self._poll_interval,
        )

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
        logger.info("notification_service_stopped")

    async def _delivery_loop(self) -> None:
        while self._running:
            self._wake_event.clear()
            try:
                await self.process_pending()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("notification_loop_error", error=str(e))
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
