"""
Notification sink for trade lifecycle events.

WHAT: Persist notifications for users (bell icon, offline users)
WHY: Participants who aren't looking at the trade window still see what happened
HOW: Insert Notification rows off the event loop; every failure is logged and swallowed
"""

import asyncio
from typing import Optional

from sqlalchemy.orm import sessionmaker

from ..core.database import session_scope
from ..core.models import Notification, NotificationType
from ..utils.logger import get_logger

logger = get_logger(__name__)


class NotificationSink:
    """Best-effort side channel; never part of a trade's success or failure."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def notify(
        self,
        user_id: int,
        message: str,
        title: Optional[str] = None,
        related_id: Optional[str] = None,
        notification_type: NotificationType = NotificationType.TRADE,
    ) -> bool:
        """
        Record a notification for a user.

        Returns:
            True if the notification was stored
        """
        try:
            await asyncio.to_thread(
                self._store, user_id, notification_type, title, message, related_id
            )
        except Exception as e:
            logger.warning(f"Failed to record notification for user {user_id}: {e}")
            return False
        return True

    def _store(
        self,
        user_id: int,
        notification_type: NotificationType,
        title: Optional[str],
        message: str,
        related_id: Optional[str],
    ):
        with session_scope(self._session_factory) as db:
            db.add(Notification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                related_id=related_id,
            ))
        logger.debug(f"Notification stored for user {user_id}: {title}")
