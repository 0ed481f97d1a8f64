#!/usr/bin/env python3
"""
Notification error taxonomy.

Request-time errors (InvalidRequest, RateLimitExceeded, PersistenceError,
EnqueueError) are returned to the caller of send_notification. Delivery errors
(ChannelDeliveryError and subclasses) are absorbed by the orchestrator's retry
logic and never leave the consumer path.
"""

from typing import Optional


class NotificationError(Exception):
    """Base exception for the notification pipeline."""

    code = "NOTIFICATION_ERROR"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class InvalidRequest(NotificationError):
    """Raised when a creation request is malformed."""

    code = "INVALID_REQUEST"


class RateLimitExceeded(NotificationError):
    """Raised when a user exceeds the notification creation quota."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str = "", retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class PersistenceError(NotificationError):
    """Raised when the notification store is unavailable."""

    code = "PERSISTENCE_ERROR"


class EnqueueError(NotificationError):
    """Raised when the queue transport cannot accept a message."""

    code = "ENQUEUE_ERROR"


class NotificationNotFound(NotificationError):
    """Raised when a notification does not exist or belongs to another user."""

    code = "NOTIFICATION_NOT_FOUND"


class InvalidTransition(NotificationError):
    """Raised when a status change would move backwards through the state machine."""

    code = "INVALID_TRANSITION"


class ChannelDeliveryError(NotificationError):
    """Transient downstream failure while sending through a channel."""

    code = "CHANNEL_DELIVERY_ERROR"

    def __init__(self, message: str = "", channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel


class CircuitOpenError(ChannelDeliveryError):
    """Raised when the channel's circuit breaker rejects a call without trying it."""

    code = "CIRCUIT_OPEN"


class InvalidDestinationError(ChannelDeliveryError):
    """Raised when the destination address fails syntactic validation."""

    code = "INVALID_DESTINATION"


class OutboundRateLimitError(ChannelDeliveryError):
    """Raised when the channel's outbound send rate is exhausted. Retryable."""

    code = "OUTBOUND_RATE_LIMITED"


class MaxAttemptsExceeded(NotificationError):
    """Terminal: every attempt allowed by the retry policy has failed."""

    code = "MAX_ATTEMPTS_EXCEEDED"
