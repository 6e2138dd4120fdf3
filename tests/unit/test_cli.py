"""
Unit tests for the ``flask backup`` commands (pgkeeper/cli.py).
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from pgkeeper.backup.artifacts import (
    BackupArtifact,
    BackupResult,
    CleanupSummary,
    HealthReport,
    RestoreResult,
)


@pytest.fixture
def executor():
    with patch('pgkeeper.cli.create_executor') as factory:
        instance = MagicMock()
        factory.return_value = instance
        yield instance


class TestRunCommand:

    def test_run_success(self, runner, executor):
        executor.run.return_value = BackupResult(
            success=True, filename='backup-full-2024-01-07-020000.sql.gz.enc', type='full',
            size=2 * 1024 * 1024, duration=3.2, storages={'local': True, 's3': False}
        )

        result = runner.invoke(args=['backup', 'run'])

        assert result.exit_code == 0
        assert 'backup-full-2024-01-07-020000.sql.gz.enc' in result.output
        assert '2.00 MB' in result.output
        assert 's3: failed' in result.output

    def test_run_forced_type(self, runner, executor):
        executor.run_differential.return_value = BackupResult(success=True, filename='', type='differential')

        result = runner.invoke(args=['backup', 'run', '--type', 'differential'])

        assert result.exit_code == 0
        executor.run_differential.assert_called_once()
        assert 'nothing to do' in result.output

    def test_run_failure_exits_1(self, runner, executor):
        executor.run_full.return_value = BackupResult(success=False, filename='', type='full', error='pg_dump failed')

        result = runner.invoke(args=['backup', 'run', '--type', 'full'])

        assert result.exit_code == 1
        assert 'pg_dump failed' in result.output


class TestOtherCommands:

    def test_cleanup(self, runner, executor):
        executor.cleanup.return_value = CleanupSummary(deleted=3, kept=10, errors=0)

        result = runner.invoke(args=['backup', 'cleanup'])

        assert result.exit_code == 0
        assert 'Deleted: 3, Kept: 10, Errors: 0' in result.output

    def test_cleanup_with_errors_exits_1(self, runner, executor):
        executor.cleanup.return_value = CleanupSummary(deleted=0, kept=1, errors=2)

        assert runner.invoke(args=['backup', 'cleanup']).exit_code == 1

    def test_health_check_unhealthy(self, runner, executor):
        executor.health_check.return_value = HealthReport(
            healthy=False, issues=['No backups found'], storages={'local': True}
        )

        result = runner.invoke(args=['backup', 'health-check'])

        assert result.exit_code == 1
        assert 'No backups found' in result.output

    def test_health_check_json(self, runner, executor):
        executor.health_check.return_value = HealthReport(healthy=True, storages={'local': True})

        result = runner.invoke(args=['backup', 'health-check', '--json'])

        assert result.exit_code == 0
        assert '"healthy": true' in result.output

    def test_list(self, runner, executor):
        executor.list_backups.return_value = [
            BackupArtifact('backup-full-2024-01-07-020000.sql.gz.enc', 'full', 1024,
                           datetime(2024, 1, 7, 2, 0, tzinfo=timezone.utc))
        ]

        result = runner.invoke(args=['backup', 'list', '--limit', '5', '--storage', 's3'])

        assert result.exit_code == 0
        executor.list_backups.assert_called_once_with('s3', 5)
        assert 'backup-full-2024-01-07-020000.sql.gz.enc' in result.output

    def test_list_unknown_storage(self, runner, executor):
        executor.list_backups.side_effect = ValueError('Storage not configured: ftp')

        result = runner.invoke(args=['backup', 'list', '--storage', 'ftp'])

        assert result.exit_code == 1

    def test_restore_requires_confirmation(self, runner, executor):
        result = runner.invoke(args=['backup', 'restore', 'backup-full-2024-01-07-020000.sql.gz.enc'], input='n\n')

        assert result.exit_code != 0
        executor.restore.assert_not_called()

    def test_restore_forced(self, runner, executor):
        executor.restore.return_value = RestoreResult(success=True, filename='backup-full-2024-01-07-020000.sql.gz.enc')

        result = runner.invoke(args=['backup', 'restore', 'backup-full-2024-01-07-020000.sql.gz.enc', '--force'])

        assert result.exit_code == 0
        executor.restore.assert_called_once_with('backup-full-2024-01-07-020000.sql.gz.enc')

    def test_restore_failure_exits_1(self, runner, executor):
        executor.restore.return_value = RestoreResult(success=False, filename='x', error='Backup file not found: x')

        result = runner.invoke(args=['backup', 'restore', 'x', '--force'])

        assert result.exit_code == 1
        assert 'not found' in result.output
