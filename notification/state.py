#!/usr/bin/env python3
"""
Notification state machine.

    PENDING -> DELIVERING -> DELIVERED          (terminal)
                          -> PENDING (retry)
                          -> FAILED             (terminal)

DELIVERING -> DELIVERING is accepted only when a message is redelivered after a
consumer died mid-attempt. PENDING -> FAILED covers a redelivered message whose
attempts are already used up.
"""

from typing import Dict, FrozenSet

from notification.exceptions import InvalidTransition
from notification.models import NotificationStatus

_TRANSITIONS: Dict[NotificationStatus, FrozenSet[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset({
        NotificationStatus.DELIVERING,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.DELIVERING: frozenset({
        NotificationStatus.DELIVERING,
        NotificationStatus.DELIVERED,
        NotificationStatus.PENDING,
        NotificationStatus.FAILED,
    }),
    NotificationStatus.DELIVERED: frozenset(),
    NotificationStatus.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(
    status for status, targets in _TRANSITIONS.items() if not targets
)


def is_terminal(status: NotificationStatus) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: NotificationStatus, target: NotificationStatus) -> bool:
    return target in _TRANSITIONS[current]


def ensure_transition(current: NotificationStatus, target: NotificationStatus) -> None:
    """Raise InvalidTransition unless current -> target is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move notification from {current.value} to {target.value}")
