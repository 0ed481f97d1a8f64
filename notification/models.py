#!/usr/bin/env python3
"""
Notification data model.

Domain entities are plain dataclasses; inbound request payloads are pydantic
models so malformed input is rejected before anything is persisted.
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Generic, TypeVar

from pydantic import BaseModel, Field, field_validator


class NotificationType(str, Enum):
    """Categories of notification; drives retry policy and template selection."""
    TASK_ASSIGNED = "TASK_ASSIGNED"
    TASK_UPDATED = "TASK_UPDATED"
    TASK_COMPLETED = "TASK_COMPLETED"
    PROJECT_CREATED = "PROJECT_CREATED"
    PROJECT_UPDATED = "PROJECT_UPDATED"
    COMMENT_ADDED = "COMMENT_ADDED"
    MENTION = "MENTION"
    DUE_DATE_REMINDER = "DUE_DATE_REMINDER"
    TASK_OVERDUE = "TASK_OVERDUE"
    PROJECT_MILESTONE = "PROJECT_MILESTONE"
    TEAM_ANNOUNCEMENT = "TEAM_ANNOUNCEMENT"

    @classmethod
    def parse(cls, value: Any) -> "NotificationType":
        """Accept enum members, values ("TASK_ASSIGNED") and camel case ("TaskAssigned")."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        try:
            return cls(text.upper())
        except ValueError:
            pass
        snake = "".join(f"_{c}" if c.isupper() and i else c for i, c in enumerate(text))
        return cls(snake.upper())


class NotificationStatus(str, Enum):
    """Lifecycle states."""
    PENDING = "PENDING"
    DELIVERING = "DELIVERING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class NotificationPriority(str, Enum):
    """Priority levels for notifications."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class DeliveryAttempt:
    """One delivery attempt as recorded in the notification's history."""
    attempt: int
    channel: Optional[str]
    status: NotificationStatus
    timestamp: datetime = field(default_factory=utcnow)
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attempt': self.attempt,
            'channel': self.channel,
            'status': self.status.value,
            'timestamp': _iso(self.timestamp),
            'error_message': self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryAttempt":
        return cls(
            attempt=int(data.get('attempt', 0)),
            channel=data.get('channel'),
            status=NotificationStatus(data['status']),
            timestamp=_parse_dt(data.get('timestamp')) or utcnow(),
            error_message=data.get('error_message'),
        )


@dataclass
class Notification:
    """A notification and its delivery state."""
    user_id: str
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    channels: List[str] = field(default_factory=lambda: ['email'])
    status: NotificationStatus = NotificationStatus.PENDING
    delivery_attempts: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempt_history: List[DeliveryAttempt] = field(default_factory=list)
    error_message: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    read_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def correlation_id(self) -> Optional[str]:
        return self.metadata.get('correlationId')

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-safe dict (the transport message body)."""
        return {
            'id': self.id,
            'user_id': self.user_id,
            'type': self.type.value,
            'title': self.title,
            'message': self.message,
            'priority': self.priority.value,
            'channels': list(self.channels),
            'status': self.status.value,
            'delivery_attempts': self.delivery_attempts,
            'metadata': dict(self.metadata),
            'attempt_history': [a.to_dict() for a in self.attempt_history],
            'error_message': self.error_message,
            'scheduled_for': _iso(self.scheduled_for),
            'read_at': _iso(self.read_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=data['id'],
            user_id=data['user_id'],
            type=NotificationType.parse(data['type']),
            title=data.get('title', ''),
            message=data.get('message', ''),
            priority=NotificationPriority(data.get('priority', 'normal')),
            channels=list(data.get('channels') or ['email']),
            status=NotificationStatus(data.get('status', 'PENDING')),
            delivery_attempts=int(data.get('delivery_attempts', 0)),
            metadata=dict(data.get('metadata') or {}),
            attempt_history=[DeliveryAttempt.from_dict(a) for a in data.get('attempt_history') or []],
            error_message=data.get('error_message'),
            scheduled_for=_parse_dt(data.get('scheduled_for')),
            read_at=_parse_dt(data.get('read_at')),
            created_at=_parse_dt(data.get('created_at')) or utcnow(),
            updated_at=_parse_dt(data.get('updated_at')) or utcnow(),
        )


class NotificationRequest(BaseModel):
    """Content and recipient of a notification to create."""
    user_id: str = Field(min_length=1)
    type: NotificationType
    title: str = ""
    message: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('user_id')
    @classmethod
    def strip_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("user_id must not be blank")
        return value

    @field_validator('type', mode='before')
    @classmethod
    def parse_type(cls, value: Any) -> NotificationType:
        return NotificationType.parse(value)


class NotificationOptions(BaseModel):
    """Delivery preferences for a new notification."""
    priority: NotificationPriority = NotificationPriority.NORMAL
    channels: List[str] = Field(default_factory=lambda: ['email'])
    scheduled_for: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('channels')
    @classmethod
    def normalize_channels(cls, value: List[str]) -> List[str]:
        names = []
        for name in value:
            name = name.strip().lower()
            if name and name not in names:
                names.append(name)
        if not names:
            raise ValueError("at least one channel is required")
        return names

    @field_validator('scheduled_for')
    @classmethod
    def ensure_aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _parse_dt(value)


@dataclass
class NotificationFilter:
    """Criteria for listing a user's notifications."""
    types: Optional[List[NotificationType]] = None
    statuses: Optional[List[NotificationStatus]] = None
    priorities: Optional[List[NotificationPriority]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_read: Optional[bool] = None

    def matches(self, notification: Notification) -> bool:
        if self.types and notification.type not in self.types:
            return False
        if self.statuses and notification.status not in self.statuses:
            return False
        if self.priorities and notification.priority not in self.priorities:
            return False
        if self.start_date and notification.created_at < self.start_date:
            return False
        if self.end_date and notification.created_at > self.end_date:
            return False
        if self.is_read is not None and notification.is_read != self.is_read:
            return False
        return True


@dataclass
class Pagination:
    page: int = 1
    limit: int = 20

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("page must be >= 1")
        if self.limit < 1:
            raise ValueError("limit must be >= 1")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


T = TypeVar('T')


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class ServiceResponse(Generic[T]):
    """Structured result returned to upstream callers (HTTP controllers)."""
    success: bool
    message: str
    data: Optional[T] = None
    error: Optional[Exception] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, data: Optional[T] = None, **metadata) -> "ServiceResponse[T]":
        return cls(success=True, message=message, data=data, metadata=metadata)

    @classmethod
    def fail(cls, message: str, error: Exception, **metadata) -> "ServiceResponse[T]":
        return cls(
            success=False,
            message=message,
            error=error,
            error_code=getattr(error, 'code', 'INTERNAL_ERROR'),
            metadata=metadata,
        )
