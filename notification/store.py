#!/usr/bin/env python3
"""
Notification persistence.

NotificationStore is what the orchestrator depends on. Two implementations:
- InMemoryNotificationStore: dict guarded by a lock (tests, single process)
- SqlNotificationStore: SQLAlchemy, one unit of work per operation

Both enforce the lifecycle state machine on update_status, bump
delivery_attempts when a notification enters DELIVERING, and append an
attempt_history entry for every status change made during delivery.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Dict, List, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from database.models import NotificationRecord
from database.uow import notification_uow
from notification.exceptions import NotificationNotFound, PersistenceError
from notification.models import (
    Notification,
    NotificationStatus,
    NotificationType,
    NotificationPriority,
    NotificationFilter,
    DeliveryAttempt,
    Pagination,
    Page,
    utcnow,
    _parse_dt,
)
from notification.state import ensure_transition

logger = logging.getLogger(__name__)


def apply_status(
    notification: Notification,
    status: NotificationStatus,
    channel: Optional[str],
    error_message: Optional[str],
    now: datetime
) -> None:
    """Apply a validated status change to a notification in place."""
    ensure_transition(notification.status, status)
    if status == NotificationStatus.DELIVERING:
        notification.delivery_attempts += 1
    notification.status = status
    if error_message is not None:
        notification.error_message = error_message
    elif status == NotificationStatus.DELIVERED:
        notification.error_message = None
    if status != NotificationStatus.PENDING or error_message is not None:
        notification.attempt_history.append(DeliveryAttempt(
            attempt=notification.delivery_attempts,
            channel=channel,
            status=status,
            timestamp=now,
            error_message=error_message,
        ))
    notification.updated_at = now


class NotificationStore(ABC):

    @abstractmethod
    def create(self, notification: Notification) -> Notification:
        """Persist a new notification. Raises PersistenceError."""

    @abstractmethod
    def find_by_id(self, notification_id: str) -> Optional[Notification]:
        pass

    @abstractmethod
    def update_status(
        self,
        notification_id: str,
        status: NotificationStatus,
        channel: Optional[str] = None,
        error_message: Optional[str] = None
    ) -> Notification:
        """
        Move a notification to status.

        Raises:
            NotificationNotFound: Unknown id
            InvalidTransition: Status change not allowed by the lifecycle
            PersistenceError: Backend failure
        """

    @abstractmethod
    def mark_as_read(self, notification_id: str, read_at: datetime) -> Notification:
        pass

    @abstractmethod
    def find_by_user(
        self,
        user_id: str,
        filters: Optional[NotificationFilter] = None,
        pagination: Optional[Pagination] = None
    ) -> Page[Notification]:
        """Newest first."""


class InMemoryNotificationStore(NotificationStore):
    """Process-local store; returns copies so callers never share state with it."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._items: Dict[str, Notification] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def __len__(self) -> int:
        return len(self._items)

    def create(self, notification: Notification) -> Notification:
        with self._lock:
            if notification.id in self._items:
                raise PersistenceError(f"Notification {notification.id} already exists")
            self._items[notification.id] = copy.deepcopy(notification)
        return copy.deepcopy(notification)

    def find_by_id(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            item = self._items.get(notification_id)
            return copy.deepcopy(item) if item else None

    def update_status(self, notification_id, status, channel=None, error_message=None) -> Notification:
        with self._lock:
            item = self._items.get(notification_id)
            if item is None:
                raise NotificationNotFound(f"Notification {notification_id} not found")
            apply_status(item, status, channel, error_message, self._clock())
            return copy.deepcopy(item)

    def mark_as_read(self, notification_id: str, read_at: datetime) -> Notification:
        with self._lock:
            item = self._items.get(notification_id)
            if item is None:
                raise NotificationNotFound(f"Notification {notification_id} not found")
            if item.read_at is None:
                item.read_at = read_at
                item.updated_at = read_at
            return copy.deepcopy(item)

    def find_by_user(self, user_id, filters=None, pagination=None) -> Page[Notification]:
        pagination = pagination or Pagination()
        filters = filters or NotificationFilter()
        with self._lock:
            matching = [n for n in self._items.values() if n.user_id == user_id and filters.matches(n)]
        matching.sort(key=lambda n: n.created_at, reverse=True)
        page_items = matching[pagination.offset:pagination.offset + pagination.limit]
        return Page(
            items=[copy.deepcopy(n) for n in page_items],
            total=len(matching),
            page=pagination.page,
            limit=pagination.limit,
        )


def record_to_notification(record: NotificationRecord) -> Notification:
    return Notification(
        id=record.id,
        user_id=record.user_id,
        type=NotificationType.parse(record.type),
        title=record.title or '',
        message=record.message or '',
        priority=NotificationPriority(record.priority),
        channels=list(record.channels or ['email']),
        status=NotificationStatus(record.status),
        delivery_attempts=record.delivery_attempts or 0,
        metadata=dict(record.metadata_ or {}),
        attempt_history=[DeliveryAttempt.from_dict(a) for a in record.attempt_history or []],
        error_message=record.error_message,
        scheduled_for=_parse_dt(record.scheduled_for),
        read_at=_parse_dt(record.read_at),
        created_at=_parse_dt(record.created_at),
        updated_at=_parse_dt(record.updated_at),
    )


def notification_to_record(notification: Notification, record: Optional[NotificationRecord] = None) -> NotificationRecord:
    record = record or NotificationRecord(id=notification.id)
    record.user_id = notification.user_id
    record.type = notification.type.value
    record.title = notification.title
    record.message = notification.message
    record.priority = notification.priority.value
    record.channels = list(notification.channels)
    record.status = notification.status.value
    record.delivery_attempts = notification.delivery_attempts
    record.attempt_history = [a.to_dict() for a in notification.attempt_history]
    record.error_message = notification.error_message
    record.metadata_ = dict(notification.metadata)
    record.scheduled_for = notification.scheduled_for
    record.read_at = notification.read_at
    record.created_at = notification.created_at
    record.updated_at = notification.updated_at
    return record


class SqlNotificationStore(NotificationStore):
    """
    SQLAlchemy-backed store.

    Status updates lock the row (SELECT ... FOR UPDATE where the backend
    supports it) so concurrent workers cannot interleave transitions.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def create(self, notification: Notification) -> Notification:
        try:
            with notification_uow(self._session_factory) as repo:
                repo.add(notification_to_record(notification))
        except SQLAlchemyError as e:
            logger.error(f"Failed to persist notification {notification.id}: {e}")
            raise PersistenceError(f"Failed to persist notification: {e}") from e
        return notification

    def find_by_id(self, notification_id: str) -> Optional[Notification]:
        try:
            with notification_uow(self._session_factory) as repo:
                record = repo.get_by_id(notification_id)
                return record_to_notification(record) if record else None
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load notification {notification_id}: {e}") from e

    def update_status(self, notification_id, status, channel=None, error_message=None) -> Notification:
        try:
            with notification_uow(self._session_factory) as repo:
                record = repo.get_by_id(notification_id, for_update=True)
                if record is None:
                    raise NotificationNotFound(f"Notification {notification_id} not found")
                notification = record_to_notification(record)
                apply_status(notification, status, channel, error_message, self._clock())
                notification_to_record(notification, record)
                return notification
        except SQLAlchemyError as e:
            logger.error(f"Failed to update notification {notification_id} to {status.value}: {e}")
            raise PersistenceError(f"Failed to update notification status: {e}") from e

    def mark_as_read(self, notification_id: str, read_at: datetime) -> Notification:
        try:
            with notification_uow(self._session_factory) as repo:
                record = repo.get_by_id(notification_id, for_update=True)
                if record is None:
                    raise NotificationNotFound(f"Notification {notification_id} not found")
                if record.read_at is None:
                    record.read_at = read_at
                    record.updated_at = read_at
                return record_to_notification(record)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to mark notification {notification_id} as read: {e}") from e

    def find_by_user(self, user_id, filters=None, pagination=None) -> Page[Notification]:
        pagination = pagination or Pagination()
        filters = filters or NotificationFilter()
        try:
            with notification_uow(self._session_factory) as repo:
                records, total = repo.list_for_user(
                    user_id,
                    types=[t.value for t in filters.types] if filters.types else None,
                    statuses=[s.value for s in filters.statuses] if filters.statuses else None,
                    priorities=[p.value for p in filters.priorities] if filters.priorities else None,
                    start_date=filters.start_date,
                    end_date=filters.end_date,
                    is_read=filters.is_read,
                    offset=pagination.offset,
                    limit=pagination.limit,
                )
                items = [record_to_notification(r) for r in records]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to list notifications for {user_id}: {e}") from e
        return Page(items=items, total=total, page=pagination.page, limit=pagination.limit)
