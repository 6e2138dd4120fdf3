"""
Notification sink for backup events.

Every notification is stored in the notifications table and echoed to the
log, so it is visible even when nobody reads the in-app inbox.
"""

import logging
from typing import Optional

from pgkeeper import db
from pgkeeper.models import Notification


logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    'info': logging.INFO,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


class NotificationService:
    """Persists notifications with Flask-SQLAlchemy."""

    def __init__(self, app=None):
        """
        Args:
            app: Flask app whose context is pushed when storing rows
                (None: use the context already active)
        """
        self.app = app

    def notify(self, user_id: int, type: str, title: str, message: str, data: Optional[dict] = None) -> Notification:
        """
        Store a notification.

        Args:
            user_id: Recipient
            type: info, warning or error
            title: Short title
            message: Human-readable message
            data: Extra JSON payload

        Returns:
            The stored Notification
        """
        logger.log(_LOG_LEVELS.get(type, logging.INFO), f"Notification [{title}]: {message}")

        if self.app is not None:
            with self.app.app_context():
                return self._store(user_id, type, title, message, data)
        return self._store(user_id, type, title, message, data)

    def _store(self, user_id, type, title, message, data) -> Notification:
        notification = Notification(
            user_id=user_id,
            type=type,
            title=title,
            message=message,
            data=data,
        )

        try:
            db.session.add(notification)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        return notification
