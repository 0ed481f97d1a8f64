#!/usr/bin/env python3
"""
Retry policies per notification type.

The policy table is built once at startup and exposed read-only. Types without
an explicit entry fall back to DEFAULT_RETRY_POLICY.

Usage:
    resolver = RetryPolicyResolver.from_config(config.retry_policies)
    policy = resolver.resolve(NotificationType.TASK_ASSIGNED)
    delay_ms = backoff_delay_ms(policy, attempt=2)
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Dict, Any

from notification.models import NotificationType, NotificationPriority


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_interval_ms: int
    priority: NotificationPriority = NotificationPriority.NORMAL

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.backoff_interval_ms < 0:
            raise ValueError("backoff_interval_ms must be >= 0")


DEFAULT_RETRY_POLICY = RetryPolicy(
    max_attempts=3,
    backoff_interval_ms=5000,
    priority=NotificationPriority.NORMAL,
)

BUILTIN_RETRY_POLICIES: Mapping[NotificationType, RetryPolicy] = MappingProxyType({
    NotificationType.TASK_ASSIGNED: RetryPolicy(
        max_attempts=5, backoff_interval_ms=5000, priority=NotificationPriority.HIGH
    ),
    NotificationType.DUE_DATE_REMINDER: RetryPolicy(
        max_attempts=3, backoff_interval_ms=10000, priority=NotificationPriority.NORMAL
    ),
})


def backoff_delay_ms(policy: RetryPolicy, attempt: int) -> int:
    """Exponential backoff: base * 2^(attempt-1) for attempt >= 1."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return policy.backoff_interval_ms * (2 ** (attempt - 1))


class RetryPolicyResolver:
    """Maps a notification type to its retry policy. Immutable once built."""

    def __init__(
        self,
        policies: Optional[Mapping[NotificationType, RetryPolicy]] = None,
        default: RetryPolicy = DEFAULT_RETRY_POLICY
    ):
        table = dict(BUILTIN_RETRY_POLICIES if policies is None else policies)
        self._policies: Mapping[NotificationType, RetryPolicy] = MappingProxyType(table)
        self._default = default

    @property
    def default(self) -> RetryPolicy:
        return self._default

    @property
    def policies(self) -> Mapping[NotificationType, RetryPolicy]:
        return self._policies

    def resolve(self, notification_type: NotificationType) -> RetryPolicy:
        return self._policies.get(notification_type, self._default)

    @classmethod
    def from_config(cls, overrides: Optional[Dict[str, Any]] = None) -> "RetryPolicyResolver":
        """
        Build a resolver from config entries layered over the built-in table.

        Args:
            overrides: Mapping of type name to a dict (or object) with
                max_attempts, backoff_interval_ms and priority.
        """
        table: Dict[NotificationType, RetryPolicy] = dict(BUILTIN_RETRY_POLICIES)
        for type_name, entry in (overrides or {}).items():
            if not isinstance(entry, dict):
                entry = entry.model_dump()
            table[NotificationType.parse(type_name)] = RetryPolicy(
                max_attempts=int(entry['max_attempts']),
                backoff_interval_ms=int(entry['backoff_interval_ms']),
                priority=NotificationPriority(entry.get('priority', 'normal')),
            )
        return cls(table)
