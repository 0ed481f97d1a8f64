from .base import Base
from .notification import NotificationRecord

__all__ = [
    'Base',
    'NotificationRecord',
]
