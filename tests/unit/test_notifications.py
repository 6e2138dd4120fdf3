"""
Unit tests for the notification sink (pgkeeper/notifications.py) and the
Notification model.
"""

from pgkeeper.models import Notification
from pgkeeper.notifications import NotificationService


class TestNotificationService:

    def test_notify_persists_row(self, db):
        NotificationService().notify(
            user_id=1,
            type='error',
            title='Backup Failed',
            message='Database backup failed: backup-full-2024-01-07-020000.sql.gz.enc',
            data={'error': 'pg_dump failed'}
        )

        stored = Notification.query.one()
        assert stored.user_id == 1
        assert stored.type == 'error'
        assert stored.title == 'Backup Failed'
        assert stored.data == {'error': 'pg_dump failed'}
        assert stored.read_at is None
        assert stored.created_at is not None

    def test_notify_with_app_pushes_context(self, app, db):
        NotificationService(app).notify(user_id=7, type='info', title='Backup Completed', message='ok')

        assert Notification.query.filter_by(user_id=7).count() == 1

    def test_to_dict(self, db):
        notification = NotificationService().notify(
            user_id=2, type='warning', title='Large Backup Detected', message='big', data={'size': 1}
        )

        data = notification.to_dict()
        assert data['userId'] == 2
        assert data['type'] == 'warning'
        assert data['readAt'] is None
