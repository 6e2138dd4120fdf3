"""
Shared pytest fixtures for pgkeeper tests.

This module provides fixtures for:
- Flask app, database and CLI runner
- Backup settings pointing at temporary directories
- A fake pg_dump / psql pair that works on plain files
- Mock fixtures for external services (S3, change detection)
- Helpers to place backup artifacts in local storage
"""

import os
import shutil
import tempfile
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from pgkeeper import create_app, db as _db
from pgkeeper.backup.artifacts import generate_backup_filename
from pgkeeper.backup.settings import BackupSettings, LocalStorageSettings
from pgkeeper.backup.storage import LocalStorage


SAMPLE_SQL = (
    b"-- PostgreSQL database dump\n"
    b"CREATE TABLE users (id integer PRIMARY KEY, name text);\n"
    b"INSERT INTO users VALUES (1, 'alice'), (2, 'bob');\n"
) * 50


class FakeDatabaseTools:
    """Stands in for DatabaseTools: dumps write SAMPLE_SQL, restores record the SQL read."""

    def __init__(self, sql: bytes = SAMPLE_SQL):
        self.sql = sql
        self.dump_calls = []
        self.restored = []
        self.dump_error = None
        self.restore_error = None

    def dump(self, output_path, tables=None):
        self.dump_calls.append(tables)
        if self.dump_error is not None:
            raise self.dump_error
        with open(output_path, 'wb') as f:
            f.write(self.sql)

    def restore(self, sql_path):
        with open(sql_path, 'rb') as f:
            self.restored.append(f.read())
        if self.restore_error is not None:
            raise self.restore_error


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing')

    app.config.update({
        'BACKUP_TEMP_DIR': os.path.join(temp_dir, 'temp'),
        'BACKUP_LOCAL_PATH': os.path.join(temp_dir, 'backups'),
    })

    yield app

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def backup_settings(tmp_path):
    """Backup settings with local storage only, compression and encryption on."""
    return BackupSettings(
        temp_dir=str(tmp_path / 'temp'),
        local=LocalStorageSettings(enabled=True, path=str(tmp_path / 'backups')),
        encryption_enabled=True,
        encryption_key='test-encryption-key',
        storage_timeout=30,
    )


@pytest.fixture
def plain_settings(backup_settings):
    """Backup settings without compression or encryption."""
    return replace(backup_settings, compression_enabled=False, encryption_enabled=False)


@pytest.fixture
def local_storage(backup_settings):
    return LocalStorage(backup_settings.local.path)


@pytest.fixture
def database_tools():
    return FakeDatabaseTools()


@pytest.fixture
def change_detector():
    """
    Mock ChangeDetector.

    Reports two tables and no modifications by default.
    """
    detector = MagicMock()
    detector.get_all_tables.return_value = ['orders', 'users']
    detector.get_modified_tables.return_value = []
    return detector


@pytest.fixture
def notifier():
    return MagicMock()


@pytest.fixture
def place_backup(local_storage):
    """
    Write a backup artifact into local storage with a given timestamp.

    Returns a function (backup_type, created_at, content) -> filename.
    """
    def _place(backup_type='full', created_at=None, content=b'backup data'):
        created_at = created_at or datetime.now(timezone.utc)
        filename = generate_backup_filename(backup_type, True, True, created_at)
        path = local_storage.base_path / filename
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return filename

    return _place


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('pgkeeper.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
