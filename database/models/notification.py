from sqlalchemy import Column, String, Text, Integer, DateTime, JSON, Index
from sqlalchemy.dialects.postgresql import JSONB

from .base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), 'postgresql')


class NotificationRecord(Base):
    """
    Persisted notification and its delivery state.

    attempt_history holds one entry per delivery attempt:
    {attempt, channel, status, timestamp, error_message}.
    """
    __tablename__ = 'notifications'

    id = Column(String(36), primary_key=True)
    user_id = Column(Text, nullable=False, index=True)

    # Content
    type = Column(String(64), nullable=False)
    title = Column(Text, nullable=False, default='')
    message = Column(Text, nullable=False, default='')
    priority = Column(String(16), nullable=False, default='normal')
    channels = Column(JsonType, nullable=False, default=list)

    # Delivery state
    status = Column(String(16), nullable=False, default='PENDING', index=True)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    attempt_history = Column(JsonType, nullable=False, default=list)
    error_message = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    metadata_ = Column('metadata', JsonType, nullable=False, default=dict)

    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index('idx_notifications_user_created', 'user_id', 'created_at'),
    )
