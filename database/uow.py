import contextlib
import logging

from sqlalchemy.orm import sessionmaker

from database.database import db_session_scope
from database.repositories import NotificationRepository

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def notification_uow(session_factory: sessionmaker):
    """Per-unit-of-work transaction scope.

    Yields a NotificationRepository bound to a fresh Session. Commits on
    success, rolls back on exception, always closes.

    Usage:
        with notification_uow(SessionFactory) as repo:
            record = repo.get_by_id(notification_id)
            # perform operations...
        # commit happens automatically on successful exit
    """
    with db_session_scope(session_factory) as session:
        yield NotificationRepository(session)
