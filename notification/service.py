#!/usr/bin/env python3
"""
Notification Orchestrator

Accepts notification requests and drives them through delivery:
- send_notification: rate limit, persist as PENDING, publish (now or later)
- handle_delivery: consume one message, send through each requested channel,
  then ack, schedule a retry with exponential backoff, or dead-letter
- mark_as_read / get_user_notifications: read-side operations for callers

Every collaborator is injected, so the same orchestrator runs against the
in-memory store and transport in tests and SQL + RQ in production.

Usage:
    from notification.service import NotificationOrchestrator

    orchestrator = NotificationOrchestrator(store, transport, rate_limiter,
                                            retry_policies, channels)
    response = orchestrator.send_notification(
        {'user_id': 'u1', 'type': 'TASK_ASSIGNED', 'title': 'New task', 'message': '...'},
        {'priority': 'high'}
    )
    if not response.success:
        print(response.error_code)
"""

import logging
import uuid
from datetime import datetime
from typing import Optional, Dict, Any, Union, Callable

from pydantic import ValidationError

from notification.channels import ChannelRegistry, DeliveryPayload
from notification.exceptions import (
    NotificationError,
    InvalidRequest,
    RateLimitExceeded,
    NotificationNotFound,
    InvalidTransition,
    PersistenceError,
    ChannelDeliveryError,
    CircuitOpenError,
    MaxAttemptsExceeded,
)
from notification.models import (
    Notification,
    NotificationRequest,
    NotificationOptions,
    NotificationStatus,
    NotificationFilter,
    Pagination,
    Page,
    ServiceResponse,
    utcnow,
)
from notification.rate_limiter import RateLimiter
from notification.retry_policy import RetryPolicy, RetryPolicyResolver, backoff_delay_ms
from notification.state import is_terminal
from notification.store import NotificationStore
from notification.transport import (
    QueueTransport,
    QueueMessage,
    RETRY_COUNT_HEADER,
    CORRELATION_HEADER,
)

logger = logging.getLogger(__name__)

DEFAULT_DESTINATION = 'notifications'


class NotificationOrchestrator:
    """
    Main notification service.

    This service coordinates:
    1. Per-user rate limiting (via RateLimiter)
    2. Persistence and lifecycle state (via NotificationStore)
    3. Queueing and retries (via QueueTransport)
    4. Channel dispatch (via ChannelRegistry)
    """

    def __init__(
        self,
        store: NotificationStore,
        transport: QueueTransport,
        rate_limiter: RateLimiter,
        retry_policies: RetryPolicyResolver,
        channels: ChannelRegistry,
        destination: str = DEFAULT_DESTINATION,
        clock: Callable[[], datetime] = utcnow
    ):
        """
        Args:
            store: Notification persistence
            transport: Queue the notifications travel through
            rate_limiter: Per-user creation quota
            retry_policies: Retry policy per notification type
            channels: Registered delivery channels
            destination: Queue destination for notification messages
            clock: Source of aware UTC datetimes
        """
        self.store = store
        self.transport = transport
        self.rate_limiter = rate_limiter
        self.retry_policies = retry_policies
        self.channels = channels
        self.destination = destination
        self._clock = clock

    @property
    def dead_letter_destination(self) -> str:
        return self.transport.dead_letter_destination

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def send_notification(
        self,
        request: Union[NotificationRequest, Dict[str, Any]],
        options: Union[NotificationOptions, Dict[str, Any], None] = None
    ) -> ServiceResponse[Notification]:
        """
        Create a notification and queue it for delivery.

        Returns:
            ServiceResponse with the PENDING notification on success, or the
            error and its code on failure. Never raises NotificationError.
        """
        correlation_id = uuid.uuid4().hex
        try:
            request, options = self._validate(request, options)
            correlation_id = request.metadata.get('correlationId') or correlation_id

            decision = self.rate_limiter.consume(request.user_id)
            if not decision.allowed:
                raise RateLimitExceeded(
                    f"Rate limit exceeded for user {request.user_id}",
                    retry_after_seconds=decision.retry_after_seconds,
                )

            notification = self._build_notification(request, options, correlation_id)
            self.store.create(notification)
            logger.info(
                f"[{correlation_id}] Created notification {notification.id} "
                f"({notification.type.value}) for user {notification.user_id}"
            )

            self._publish(notification, correlation_id)
            return ServiceResponse.ok(
                "Notification queued for delivery",
                data=notification,
                correlationId=correlation_id,
            )

        except RateLimitExceeded as e:
            logger.warning(f"[{correlation_id}] {e}")
            return ServiceResponse.fail(
                "Failed to send notification", e,
                correlationId=correlation_id, retryAfterSeconds=e.retry_after_seconds,
            )
        except NotificationError as e:
            logger.error(f"[{correlation_id}] Failed to send notification: {e}")
            return ServiceResponse.fail("Failed to send notification", e, correlationId=correlation_id)

    def _validate(self, request, options):
        try:
            if not isinstance(request, NotificationRequest):
                request = NotificationRequest.model_validate(request or {})
            if options is None:
                options = NotificationOptions()
            elif not isinstance(options, NotificationOptions):
                options = NotificationOptions.model_validate(options)
        except (ValidationError, ValueError) as e:
            raise InvalidRequest(f"Invalid notification request: {e}") from e

        unknown = [name for name in options.channels if name not in self.channels]
        if unknown:
            raise InvalidRequest(f"Unknown channel(s): {', '.join(unknown)}")
        return request, options

    def _build_notification(self, request: NotificationRequest, options: NotificationOptions,
                            correlation_id: str) -> Notification:
        now = self._clock()
        metadata = {**request.metadata, **options.metadata, 'correlationId': correlation_id}
        if options.scheduled_for:
            metadata['scheduledFor'] = options.scheduled_for.isoformat()
        return Notification(
            user_id=request.user_id,
            type=request.type,
            title=request.title,
            message=request.message,
            priority=options.priority,
            channels=list(options.channels),
            metadata=metadata,
            scheduled_for=options.scheduled_for,
            created_at=now,
            updated_at=now,
        )

    def _publish(self, notification: Notification, correlation_id: str) -> None:
        """Raises EnqueueError; the notification stays PENDING in the store."""
        policy = self.retry_policies.resolve(notification.type)
        headers = {RETRY_COUNT_HEADER: 0, CORRELATION_HEADER: correlation_id}
        delay = 0.0
        if notification.scheduled_for:
            delay = (notification.scheduled_for - self._clock()).total_seconds()

        if delay > 0:
            self.transport.publish_later(delay, self.destination, notification.to_dict(), policy.priority, headers)
            logger.info(f"[{correlation_id}] Notification {notification.id} scheduled in {delay:.0f}s")
        else:
            self.transport.publish(self.destination, notification.to_dict(), policy.priority, headers)
            logger.info(f"[{correlation_id}] Notification {notification.id} queued ({policy.priority.value})")

    # ------------------------------------------------------------------
    # Delivery path
    # ------------------------------------------------------------------

    def handle_delivery(self, message: QueueMessage) -> None:
        """
        Process one message from the transport. Settles the message exactly
        once and never raises.
        """
        try:
            incoming = Notification.from_dict(message.body)
        except (KeyError, ValueError, TypeError) as e:
            logger.error(f"Undecodable message {message.id}, dead-lettering: {e}")
            self.transport.reject(message, requeue=False)
            return

        correlation_id = message.headers.get(CORRELATION_HEADER) or incoming.correlation_id
        tag = f"[{correlation_id}] Notification {incoming.id}"

        try:
            notification = self.store.find_by_id(incoming.id)
        except PersistenceError as e:
            logger.error(f"{tag}: store unavailable, requeueing: {e}")
            self.transport.reject(message, requeue=True)
            return

        if notification is None:
            logger.error(f"{tag}: not found in store, dead-lettering")
            self.transport.reject(message, requeue=False)
            return

        if is_terminal(notification.status):
            logger.info(f"{tag}: already {notification.status.value}, skipping redelivery")
            self.transport.ack(message)
            return

        policy = self.retry_policies.resolve(notification.type)
        if notification.delivery_attempts >= policy.max_attempts:
            self._settle_failure(notification, policy, message, correlation_id,
                                 notification.error_message or "attempts exhausted before redelivery", None)
            return

        try:
            notification = self.store.update_status(notification.id, NotificationStatus.DELIVERING)
        except InvalidTransition as e:
            logger.info(f"{tag}: concurrent update, skipping ({e})")
            self.transport.ack(message)
            return
        except PersistenceError as e:
            logger.error(f"{tag}: could not mark DELIVERING, requeueing: {e}")
            self.transport.reject(message, requeue=True)
            return
        except NotificationError as e:
            logger.error(f"{tag}: could not mark DELIVERING, dead-lettering: {e}")
            self.transport.reject(message, requeue=False)
            return

        logger.info(f"{tag}: delivery attempt {notification.delivery_attempts}/{policy.max_attempts}")

        channel_name = None
        try:
            payload = DeliveryPayload(
                notification_id=notification.id,
                type=notification.type,
                title=notification.title,
                message=notification.message,
                priority=notification.priority,
                metadata=dict(notification.metadata),
            )
            for channel_name in notification.channels:
                self.channels.get(channel_name).send(notification.user_id, payload, correlation_id)
        except CircuitOpenError as e:
            logger.warning(f"{tag}: circuit open on {channel_name}, backing off: {e}")
            self._settle_failure(notification, policy, message, correlation_id, str(e), channel_name)
            return
        except ChannelDeliveryError as e:
            logger.warning(f"{tag}: {channel_name} delivery failed ({e.code}): {e}")
            self._settle_failure(notification, policy, message, correlation_id, str(e), channel_name)
            return
        except Exception as e:
            logger.error(f"{tag}: unexpected error on {channel_name}: {e}", exc_info=True)
            self._settle_failure(notification, policy, message, correlation_id, str(e), channel_name)
            return

        try:
            self.store.update_status(notification.id, NotificationStatus.DELIVERED, channel=channel_name)
        except NotificationError as e:
            logger.error(f"{tag}: sent but could not record DELIVERED, requeueing: {e}")
            self.transport.reject(message, requeue=True)
            return

        logger.info(f"{tag}: delivered via {', '.join(notification.channels)}")
        self.transport.ack(message)

    def _settle_failure(
        self,
        notification: Notification,
        policy: RetryPolicy,
        message: QueueMessage,
        correlation_id: Optional[str],
        error: str,
        channel: Optional[str]
    ) -> None:
        tag = f"[{correlation_id}] Notification {notification.id}"
        attempts = notification.delivery_attempts
        try:
            if attempts < policy.max_attempts:
                delay_ms = backoff_delay_ms(policy, max(attempts, 1))
                updated = self.store.update_status(
                    notification.id, NotificationStatus.PENDING, channel=channel, error_message=error
                )
                self.transport.publish_later(
                    delay_ms / 1000.0,
                    self.destination,
                    updated.to_dict(),
                    policy.priority,
                    {RETRY_COUNT_HEADER: attempts, CORRELATION_HEADER: correlation_id},
                )
                logger.info(f"{tag}: retry {attempts}/{policy.max_attempts - 1} in {delay_ms}ms")
                self.transport.ack(message)
                return

            exhausted = MaxAttemptsExceeded(
                f"Delivery failed after {attempts} attempt(s): {error}"
            )
            updated = self.store.update_status(
                notification.id, NotificationStatus.FAILED, channel=channel, error_message=str(exhausted)
            )
            history = "; ".join(
                f"#{a.attempt} {a.channel or '-'} {a.status.value}"
                + (f" ({a.error_message})" if a.error_message else "")
                for a in updated.attempt_history
            )
            logger.warning(f"{tag}: {exhausted.code} {exhausted}. History: {history}")
            self.transport.reject(message, requeue=False)

        except NotificationError as e:
            logger.error(f"{tag}: failure handling did not complete, requeueing: {e}")
            self.transport.reject(message, requeue=True)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def mark_as_read(self, notification_id: str, user_id: str) -> ServiceResponse[Notification]:
        try:
            notification = self.store.find_by_id(notification_id)
            if notification is None or notification.user_id != user_id:
                raise NotificationNotFound(f"Notification {notification_id} not found")
            updated = self.store.mark_as_read(notification_id, self._clock())
            return ServiceResponse.ok("Notification marked as read", data=updated)
        except NotificationError as e:
            logger.error(f"Failed to mark notification {notification_id} as read: {e}")
            return ServiceResponse.fail("Failed to mark notification as read", e)

    def get_user_notifications(
        self,
        user_id: str,
        filters: Optional[NotificationFilter] = None,
        pagination: Optional[Pagination] = None
    ) -> ServiceResponse[Page[Notification]]:
        try:
            page = self.store.find_by_user(user_id, filters, pagination)
            return ServiceResponse.ok(
                "Notifications retrieved",
                data=page,
                total=page.total,
                totalPages=page.total_pages,
            )
        except NotificationError as e:
            logger.error(f"Failed to list notifications for user {user_id}: {e}")
            return ServiceResponse.fail("Failed to retrieve notifications", e)
