import logging
from typing import List, Optional, Tuple
from sqlalchemy import select, func

from database.models import NotificationRecord
from database.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class NotificationRepository(BaseRepository):
    def add(self, record: NotificationRecord) -> NotificationRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def get_by_id(self, notification_id: str, for_update: bool = False) -> Optional[NotificationRecord]:
        stmt = select(NotificationRecord).where(NotificationRecord.id == notification_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_user(
        self,
        user_id: str,
        types: Optional[List[str]] = None,
        statuses: Optional[List[str]] = None,
        priorities: Optional[List[str]] = None,
        start_date=None,
        end_date=None,
        is_read: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20
    ) -> Tuple[List[NotificationRecord], int]:
        """Newest first. Returns (records on this page, total matching)."""
        stmt = select(NotificationRecord).where(NotificationRecord.user_id == user_id)

        if types:
            stmt = stmt.where(NotificationRecord.type.in_(types))
        if statuses:
            stmt = stmt.where(NotificationRecord.status.in_(statuses))
        if priorities:
            stmt = stmt.where(NotificationRecord.priority.in_(priorities))
        if start_date is not None:
            stmt = stmt.where(NotificationRecord.created_at >= start_date)
        if end_date is not None:
            stmt = stmt.where(NotificationRecord.created_at <= end_date)
        if is_read is True:
            stmt = stmt.where(NotificationRecord.read_at.is_not(None))
        elif is_read is False:
            stmt = stmt.where(NotificationRecord.read_at.is_(None))

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        page_stmt = stmt.order_by(NotificationRecord.created_at.desc()).offset(offset).limit(limit)
        return list(self.db.execute(page_stmt).scalars().all()), total

    def count_by_status(self, user_id: Optional[str] = None) -> dict:
        stmt = select(NotificationRecord.status, func.count()).group_by(NotificationRecord.status)
        if user_id:
            stmt = stmt.where(NotificationRecord.user_id == user_id)
        return {status: count for status, count in self.db.execute(stmt).all()}
