"""
Unit tests for typed backup settings (pgkeeper/backup/settings.py).
"""

import pytest

from pgkeeper.backup.settings import BackupSettings


class TestBackupSettings:
    """Test validation and construction from configuration."""

    def test_defaults_with_key(self):
        settings = BackupSettings(encryption_key='k')

        assert settings.primary_storage == 'local'
        assert settings.compression_level == 6
        assert settings.full_backup_weekday == 7
        assert settings.health.max_backup_age_hours == 25

    def test_encryption_without_key_rejected(self):
        with pytest.raises(ValueError, match='no encryption key'):
            BackupSettings(encryption_enabled=True, encryption_key=None)

    def test_encryption_disabled_needs_no_key(self):
        assert BackupSettings(encryption_enabled=False).encryption_key is None

    @pytest.mark.parametrize('kwargs', [
        {'primary_storage': 'ftp'},
        {'compression_level': 10},
        {'compression_level': -1},
        {'full_backup_weekday': 0},
        {'full_backup_weekday': 8},
    ])
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ValueError):
            BackupSettings(encryption_key='k', **kwargs)


class TestFromConfig:

    def test_reads_flat_mapping(self):
        settings = BackupSettings.from_config({
            'SQLALCHEMY_DATABASE_URI': 'postgresql://backup:pw@db:5432/app',
            'SECRET_KEY': 'flask-secret',
            'BACKUP_TEMP_DIR': '/tmp/pgk',
            'BACKUP_PRIMARY_STORAGE': 's3',
            'BACKUP_S3_ENABLED': 'true',
            'BACKUP_S3_BUCKET': 'bucket',
            'BACKUP_S3_ENDPOINT': '',
            'BACKUP_WEBDAV_ENABLED': 'false',
            'BACKUP_COMPRESSION_LEVEL': '9',
            'BACKUP_RETENTION_DAILY': '14',
            'BACKUP_EXCLUDED_TABLES': 'audit_log, sessions,',
            'BACKUP_NOTIFY_SUCCESS': 'yes',
            'BACKUP_STORAGE_TIMEOUT': '120',
            'BACKUP_DUMP_TIMEOUT': '',
        })

        assert settings.database.database == 'app'
        assert settings.database.password == 'pw'
        assert settings.temp_dir == '/tmp/pgk'
        assert settings.primary_storage == 's3'
        assert settings.s3.enabled is True
        assert settings.s3.endpoint is None
        assert settings.webdav.enabled is False
        assert settings.compression_level == 9
        assert settings.retention.daily_days == 14
        assert settings.excluded_tables == ('audit_log', 'sessions')
        assert settings.notifications.on_success is True
        assert settings.storage_timeout == 120
        assert settings.dump_timeout is None

    def test_encryption_key_falls_back_to_secret_key(self):
        settings = BackupSettings.from_config({'SECRET_KEY': 'flask-secret'})

        assert settings.encryption_key == 'flask-secret'

    def test_explicit_encryption_key_wins(self):
        settings = BackupSettings.from_config({'SECRET_KEY': 'flask-secret', 'BACKUP_ENCRYPTION_KEY': 'backup-key'})

        assert settings.encryption_key == 'backup-key'

    def test_missing_key_rejected(self):
        with pytest.raises(ValueError):
            BackupSettings.from_config({})

    def test_from_flask_config(self, app):
        settings = BackupSettings.from_config(app.config)

        assert settings.encryption_key == 'test-secret-key'
        assert settings.local.path == app.config['BACKUP_LOCAL_PATH']
