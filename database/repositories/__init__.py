from database.repositories.base import BaseRepository
from database.repositories.notification import NotificationRepository

__all__ = [
    'BaseRepository',
    'NotificationRepository',
]
