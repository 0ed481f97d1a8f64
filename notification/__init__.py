"""
Notification Module

Asynchronous notification delivery: requests are persisted, queued, consumed
by a worker, sent through pluggable channels and retried with exponential
backoff or dead-lettered.

Usage:
    from notification import NotificationOrchestrator, InMemoryTransport

    orchestrator = NotificationOrchestrator(store, transport, rate_limiter,
                                            RetryPolicyResolver(), channels)
    response = orchestrator.send_notification(
        {'user_id': 'user123', 'type': 'TASK_ASSIGNED', 'title': 'New task', 'message': '...'}
    )

    # Worker side
    transport.drain('notifications', orchestrator.handle_delivery)
"""

from notification.models import (
    Notification,
    NotificationType,
    NotificationStatus,
    NotificationPriority,
    NotificationRequest,
    NotificationOptions,
    NotificationFilter,
    DeliveryAttempt,
    Pagination,
    Page,
    ServiceResponse,
)

from notification.exceptions import (
    NotificationError,
    InvalidRequest,
    RateLimitExceeded,
    PersistenceError,
    EnqueueError,
    NotificationNotFound,
    InvalidTransition,
    ChannelDeliveryError,
    CircuitOpenError,
    InvalidDestinationError,
    OutboundRateLimitError,
    MaxAttemptsExceeded,
)

from notification.channels import (
    DeliveryChannel,
    DeliveryPayload,
    DeliveryReceipt,
    EmailChannel,
    EmailProvider,
    SmtpEmailProvider,
    SendGridEmailProvider,
    DryRunEmailProvider,
    ChannelRegistry,
)

from notification.retry_policy import (
    RetryPolicy,
    RetryPolicyResolver,
    DEFAULT_RETRY_POLICY,
    backoff_delay_ms,
)

from notification.transport import (
    QueueTransport,
    QueueMessage,
    InMemoryTransport,
)

from notification.store import (
    NotificationStore,
    InMemoryNotificationStore,
    SqlNotificationStore,
)

from notification.rate_limiter import (
    RateLimiter,
    SlidingWindowRateLimiter,
    RedisRateLimiter,
)

from notification.circuit_breaker import CircuitBreaker, CircuitState

from notification.service import NotificationOrchestrator

__all__ = [
    # Models
    'Notification',
    'NotificationType',
    'NotificationStatus',
    'NotificationPriority',
    'NotificationRequest',
    'NotificationOptions',
    'NotificationFilter',
    'DeliveryAttempt',
    'Pagination',
    'Page',
    'ServiceResponse',
    # Errors
    'NotificationError',
    'InvalidRequest',
    'RateLimitExceeded',
    'PersistenceError',
    'EnqueueError',
    'NotificationNotFound',
    'InvalidTransition',
    'ChannelDeliveryError',
    'CircuitOpenError',
    'InvalidDestinationError',
    'OutboundRateLimitError',
    'MaxAttemptsExceeded',
    # Channels
    'DeliveryChannel',
    'DeliveryPayload',
    'DeliveryReceipt',
    'EmailChannel',
    'EmailProvider',
    'SmtpEmailProvider',
    'SendGridEmailProvider',
    'DryRunEmailProvider',
    'ChannelRegistry',
    # Retry
    'RetryPolicy',
    'RetryPolicyResolver',
    'DEFAULT_RETRY_POLICY',
    'backoff_delay_ms',
    # Transport
    'QueueTransport',
    'QueueMessage',
    'InMemoryTransport',
    # Store
    'NotificationStore',
    'InMemoryNotificationStore',
    'SqlNotificationStore',
    # Rate limiting / resilience
    'RateLimiter',
    'SlidingWindowRateLimiter',
    'RedisRateLimiter',
    'CircuitBreaker',
    'CircuitState',
    # Service
    'NotificationOrchestrator',
]
