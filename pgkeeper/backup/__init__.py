"""
Backup module for pgkeeper.

This module handles the core backup functionality including:
- Database dumps and restores (pg_dump / psql)
- Change detection for differential backups
- Compression and encryption
- Storage (local, S3 and WebDAV)
- Retention policy planning
- Health monitoring
- Execution orchestration
"""

from .artifacts import BackupArtifact, BackupError, BackupResult, Manifest
from .executor import BackupExecutor
from .health import HealthMonitor
from .retention import RetentionPolicy, plan_retention
from .settings import BackupSettings
from .storage import LocalStorage, S3Storage, WebDAVStorage, create_storages

__all__ = [
    'BackupArtifact',
    'BackupError',
    'BackupResult',
    'BackupExecutor',
    'BackupSettings',
    'HealthMonitor',
    'LocalStorage',
    'Manifest',
    'RetentionPolicy',
    'S3Storage',
    'WebDAVStorage',
    'create_storages',
    'plan_retention'
]
