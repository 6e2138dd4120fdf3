"""
Backup health evaluation: storage reachability, free space and freshness.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from .artifacts import HealthReport
from .settings import HealthThresholds


logger = logging.getLogger(__name__)

GIB = 1024 * 1024 * 1024


class HealthMonitor:
    """Checks storages against the configured health thresholds."""

    def __init__(self, thresholds: HealthThresholds):
        self.thresholds = thresholds

    def evaluate(self, storages: Sequence, primary, now: Optional[datetime] = None) -> HealthReport:
        """
        Evaluate backup health.

        Every storage is checked for availability. The age of the newest
        backup is read from the primary storage even when it reports itself
        unavailable; free space only when it is available.

        Args:
            storages: All configured storage adapters
            primary: The primary storage adapter (None if not configured)
            now: Reference time (default: current UTC time)

        Returns:
            HealthReport
        """
        now = now or datetime.now(timezone.utc)
        issues = []
        status = {}

        for storage in storages:
            try:
                available = storage.is_available()
            except Exception as e:
                logger.error(f"Availability check for storage {storage.name} raised: {e}")
                available = False

            status[storage.name] = available
            if not available:
                issues.append(f"Storage {storage.name} is not available")

        last_backup = None

        if primary is None:
            issues.append("Primary storage is not configured")
        else:
            if status.get(primary.name):
                self._check_free_space(primary, issues)
            last_backup = self._check_freshness(primary, now, issues)

        return HealthReport(
            healthy=not issues,
            issues=issues,
            storages=status,
            last_backup=last_backup,
        )

    def _check_free_space(self, storage, issues: list):
        try:
            free_space = storage.get_free_space()
        except Exception as e:
            logger.error(f"Free space check for storage {storage.name} raised: {e}")
            issues.append(f"Failed to read free space on {storage.name}")
            return

        if free_space is None:
            return

        free_gb = free_space / GIB
        if free_gb < self.thresholds.min_free_space_gb:
            issues.append(
                f"Low disk space: {free_gb:.2f}GB (minimum: {self.thresholds.min_free_space_gb}GB)"
            )

    def _check_freshness(self, storage, now: datetime, issues: list):
        try:
            backups = storage.list()
        except Exception as e:
            logger.error(f"Listing backups on storage {storage.name} raised: {e}")
            issues.append(f"Failed to list backups on {storage.name}")
            return None

        if not backups:
            issues.append("No backups found")
            return None

        last_backup = backups[0]
        hours = (now - last_backup.created_at).total_seconds() / 3600

        if hours > self.thresholds.max_backup_age_hours:
            issues.append(
                f"Last backup is too old: {hours:.1f} hours (max: {self.thresholds.max_backup_age_hours} hours)"
            )

        return last_backup
