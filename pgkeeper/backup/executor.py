"""
Backup executor - orchestrates backup, retention, health and restore.

Backup workflow:
1. Dump the database with pg_dump (whole database or modified tables)
2. Compress (gzip)
3. Encrypt (AES-256-GCM)
4. Upload the manifest to every storage
5. Upload the artifact to every storage, concurrently
6. Cleanup temporary files (always)
7. Size check and notifications
"""

import json
import logging
import os
import shutil
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .artifacts import (
    DIFFERENTIAL,
    FULL,
    BackupArtifact,
    BackupError,
    BackupResult,
    CleanupSummary,
    HealthReport,
    Manifest,
    RestoreResult,
    generate_backup_filename,
    manifest_filename,
)
from .changes import ChangeDetector
from .compression import CompressionFailed, compress_file, decompress_file
from .encryption import EncryptionFailed, FileCipher
from .health import HealthMonitor
from .lock import BackupInProgress, LockUnavailable, run_lock
from .process import DatabaseTools
from .retention import plan_retention
from .settings import BackupSettings
from .storage import StorageError, create_storages


logger = logging.getLogger(__name__)

MIB = 1024 * 1024


class ManifestUploadFailed(BackupError):
    """A storage rejected the manifest. Logged only, never fails a run."""
    pass


class DuplicateBackup(BackupError):
    """An artifact with the same name is already on the primary storage."""
    pass


class RestoreNotFound(BackupError):
    pass


class RestoreDecryptFailed(BackupError):
    pass


class RestoreDecompressFailed(BackupError):
    pass


def _strip_suffix(path: str, suffix: str, fallback: str) -> str:
    if path.endswith(suffix):
        return path[:-len(suffix)]
    return path + fallback


class BackupExecutor:
    """
    Orchestrates backup runs, retention cleanup, health checks and restores
    for one database.

    Collaborators are injected so that each can be replaced in tests; any
    left out is built from settings.
    """

    def __init__(
        self,
        settings: BackupSettings,
        storages: Optional[Sequence] = None,
        change_detector: Optional[ChangeDetector] = None,
        database_tools: Optional[DatabaseTools] = None,
        notifier=None,
        health_monitor: Optional[HealthMonitor] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Backup settings
            storages: Storage adapters (default: built from settings)
            change_detector: Finds modified tables; without one, differential
                runs fall back to full runs
            database_tools: pg_dump / psql wrapper
            notifier: Object with a notify(user_id, type, title, message, data)
                method; None disables notifications
            health_monitor: Health evaluator
        """
        self.settings = settings
        self.storages = tuple(storages) if storages is not None else create_storages(settings)
        self.change_detector = change_detector
        self.database_tools = database_tools or DatabaseTools(
            settings.database, dump_timeout=settings.dump_timeout
        )
        self.notifier = notifier
        self.health_monitor = health_monitor or HealthMonitor(settings.health)
        self.cipher = FileCipher(settings.encryption_key) if settings.encryption_enabled else None

    @property
    def primary(self):
        """The storage used for lookups (last full backup, restore, health)."""
        for storage in self.storages:
            if storage.name == self.settings.primary_storage:
                return storage
        return None

    # ------------------------------------------------------------------
    # Backup runs
    # ------------------------------------------------------------------

    def run(self) -> BackupResult:
        """Run a full backup on the configured weekday, a differential otherwise."""
        today = datetime.now(timezone.utc)
        if today.isoweekday() == self.settings.full_backup_weekday:
            return self.run_full()
        return self.run_differential()

    def run_full(self) -> BackupResult:
        return self._guarded(FULL, self._full_backup)

    def run_differential(self) -> BackupResult:
        return self._guarded(DIFFERENTIAL, self._differential_backup)

    def _guarded(self, backup_type: str, body: Callable[[float], BackupResult]) -> BackupResult:
        started = time.monotonic()

        try:
            with run_lock(self.settings.temp_dir, self.settings.database.database):
                return body(started)
        except BackupInProgress as e:
            logger.warning(f"Skipping {backup_type} backup: {e}")
            return BackupResult(
                success=False,
                filename='',
                type=backup_type,
                duration=time.monotonic() - started,
                error=str(e),
            )
        except LockUnavailable as e:
            return self._failure('', backup_type, started, e)

    def _full_backup(self, started: float) -> BackupResult:
        tables = []
        if self.change_detector is not None:
            try:
                tables = self.change_detector.get_all_tables()
            except Exception as e:
                logger.warning(f"Could not list tables for the manifest: {e}")

        return self._execute(FULL, started, dump_tables=None, manifest_tables=tables)

    def _differential_backup(self, started: float) -> BackupResult:
        try:
            last_full = self._find_last_full_backup()
        except Exception as e:
            return self._failure('', DIFFERENTIAL, started, f"Failed to look up last full backup: {e}")

        if last_full is None:
            logger.warning("No full backup found, running full backup instead")
            return self._full_backup(started)

        if self.change_detector is None:
            logger.warning("No change detector configured, running full backup instead")
            return self._full_backup(started)

        try:
            modified = self.change_detector.get_modified_tables(last_full.created_at)
        except Exception as e:
            return self._failure('', DIFFERENTIAL, started, f"Change detection failed: {e}")

        if not modified:
            logger.info("No tables modified since last full backup, skipping")
            return BackupResult(
                success=True,
                filename='',
                type=DIFFERENTIAL,
                size=0,
                duration=time.monotonic() - started,
                storages={},
            )

        logger.info(f"Found {len(modified)} modified tables: {', '.join(modified)}")
        return self._execute(
            DIFFERENTIAL,
            started,
            dump_tables=modified,
            manifest_tables=modified,
            full_backup_reference=last_full.filename
        )

    def _find_last_full_backup(self) -> Optional[BackupArtifact]:
        primary = self.primary
        if primary is None:
            return None

        for artifact in primary.list():
            if artifact.type == FULL:
                return artifact
        return None

    def _execute(
        self,
        backup_type: str,
        started: float,
        dump_tables: Optional[List[str]],
        manifest_tables: List[str],
        full_backup_reference: Optional[str] = None
    ) -> BackupResult:
        now = datetime.now(timezone.utc)
        filename = generate_backup_filename(
            backup_type,
            self.settings.compression_enabled,
            self.settings.encryption_enabled,
            now
        )
        work_dir = None

        logger.info(f"Starting {backup_type} backup: {filename}")

        try:
            primary = self.primary
            if primary is not None and primary.exists(filename):
                raise DuplicateBackup(f"Backup file already exists: {filename}")

            os.makedirs(self.settings.temp_dir, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix='pgkeeper_backup_', dir=self.settings.temp_dir)

            artifact_path = self._produce_artifact(work_dir, filename, dump_tables)
            size = os.path.getsize(artifact_path)

            manifest = Manifest(
                type=backup_type,
                created_at=now,
                tables=list(manifest_tables),
                full_backup_reference=full_backup_reference,
            )
            self._upload_manifest(work_dir, filename, manifest)

            storages = self._replicate(artifact_path, filename)

        except (BackupError, OSError) as e:
            return self._failure(filename, backup_type, started, e)

        finally:
            if work_dir and os.path.exists(work_dir):
                shutil.rmtree(work_dir, ignore_errors=True)

        duration = time.monotonic() - started

        if self.settings.require_storage and not any(storages.values()):
            return self._failure(
                filename, backup_type, started,
                f"UploadFailed: no storage accepted {filename}",
                size=size, storages=storages
            )

        logger.info(
            f"{backup_type.capitalize()} backup completed: {filename} "
            f"({size / MIB:.2f} MB in {duration:.2f}s, storages: {storages})"
        )

        if size > self.settings.health.max_backup_size_mb * MIB:
            self._notify_large_backup(filename, size)

        if self.settings.notifications.on_success:
            self._notify(
                'info',
                'Backup Completed',
                f"Database backup completed: {filename}",
                {'filename': filename, 'size': size, 'duration': duration, 'storages': storages}
            )

        return BackupResult(
            success=True,
            filename=filename,
            type=backup_type,
            size=size,
            duration=duration,
            storages=storages,
        )

    def _produce_artifact(self, work_dir: str, filename: str, tables: Optional[List[str]]) -> str:
        """Run dump -> compress -> encrypt, each stage consuming the previous file."""
        stem = filename.split('.sql', 1)[0]
        current = os.path.join(work_dir, f"{stem}.sql")

        self.database_tools.dump(current, tables)

        if self.settings.compression_enabled:
            compressed = compress_file(current, f"{current}.gz", self.settings.compression_level)
            os.remove(current)
            current = compressed

        if self.cipher is not None:
            encrypted = self.cipher.encrypt_file(current, f"{current}.enc")
            os.remove(current)
            current = encrypted

        return current

    def _upload_manifest(self, work_dir: str, filename: str, manifest: Manifest):
        name = manifest_filename(filename)
        path = os.path.join(work_dir, name)

        with open(path, 'w') as f:
            json.dump(manifest.to_dict(), f, indent=2)

        def upload(storage) -> bool:
            try:
                if not storage.upload(path, name):
                    raise ManifestUploadFailed(f"{storage.name} rejected {name}")
                return True
            except Exception as e:
                logger.error(f"Failed to upload manifest to {storage.name}: {e}")
                return False

        self._fan_out(upload, f"manifest {name}")
        os.remove(path)

    def _replicate(self, local_path: str, filename: str) -> Dict[str, bool]:
        """Upload the artifact to every storage; one storage's failure never affects another."""

        def upload(storage) -> bool:
            try:
                if not storage.is_available():
                    logger.warning(f"Storage {storage.name} not available, skipping upload")
                    return False

                uploaded = bool(storage.upload(local_path, filename))
                if not uploaded:
                    logger.error(f"Upload of {filename} to {storage.name} failed")
                return uploaded

            except Exception as e:
                logger.error(f"Upload of {filename} to {storage.name} raised: {e}")
                return False

        return self._fan_out(upload, filename)

    def _fan_out(self, task: Callable, label: str) -> Dict[str, bool]:
        results = {storage.name: False for storage in self.storages}
        if not self.storages:
            return results

        pool = ThreadPoolExecutor(max_workers=len(self.storages), thread_name_prefix='pgkeeper-upload')
        futures = {pool.submit(task, storage): storage for storage in self.storages}

        try:
            done, pending = wait(futures, timeout=self.settings.storage_timeout)

            for future in done:
                results[futures[future].name] = future.result()

            for future in pending:
                logger.error(
                    f"Upload of {label} to {futures[future].name} timed out "
                    f"after {self.settings.storage_timeout}s, abandoning it"
                )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return results

    def _failure(
        self,
        filename: str,
        backup_type: str,
        started: float,
        error,
        size: int = 0,
        storages: Optional[Dict[str, bool]] = None
    ) -> BackupResult:
        duration = time.monotonic() - started
        message = str(error)

        logger.error(
            f"{backup_type.capitalize()} backup failed after {duration:.2f}s "
            f"({type(error).__name__ if isinstance(error, Exception) else 'error'}): {message}"
        )

        if self.settings.notifications.on_failure:
            self._notify(
                'error',
                'Backup Failed',
                f"Database backup failed: {filename or backup_type}",
                {
                    'filename': filename,
                    'error': message,
                    'timestamp': datetime.now(timezone.utc).isoformat(),
                }
            )

        return BackupResult(
            success=False,
            filename=filename,
            type=backup_type,
            size=size,
            duration=duration,
            storages=storages or {},
            error=message,
        )

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def cleanup(self, now: Optional[datetime] = None) -> CleanupSummary:
        """
        Apply the retention policy to every storage.

        Each storage is planned separately since their contents may drift
        apart. A failed delete is counted and the pass goes on.

        Returns:
            CleanupSummary aggregated over all storages
        """
        logger.info("Starting backup cleanup")
        summary = CleanupSummary()

        for storage in self.storages:
            try:
                backups = storage.list()
            except Exception as e:
                logger.error(f"Failed to list backups on {storage.name}: {e}")
                continue

            plan = plan_retention(backups, self.settings.retention, now)

            for artifact in plan.delete:
                remote_name = artifact.path or artifact.filename

                try:
                    deleted = storage.delete(remote_name)
                except Exception as e:
                    logger.error(f"Failed to delete {remote_name} from {storage.name}: {e}")
                    deleted = False

                if deleted:
                    summary.deleted += 1
                    logger.info(f"Deleted {remote_name} from {storage.name}")
                    self._delete_manifest(storage, remote_name)
                else:
                    summary.errors += 1

            summary.kept += len(backups) - len(plan.delete)

        logger.info(
            f"Backup cleanup completed. Deleted: {summary.deleted}, "
            f"Kept: {summary.kept}, Errors: {summary.errors}"
        )
        return summary

    def _delete_manifest(self, storage, remote_name: str):
        name = manifest_filename(remote_name)
        try:
            if storage.exists(name):
                storage.delete(name)
        except Exception as e:
            logger.warning(f"Failed to delete manifest {name} from {storage.name}: {e}")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_check(self) -> HealthReport:
        report = self.health_monitor.evaluate(self.storages, self.primary)

        if report.healthy:
            logger.info("Backup health check passed")
        else:
            logger.error(f"Backup health check failed: {report.issues}")

            if self.settings.notifications.on_health_check_failure:
                self._notify(
                    'error',
                    'Backup Health Check Failed',
                    f"Backup system has {len(report.issues)} issue(s)",
                    {
                        'issues': report.issues,
                        'timestamp': datetime.now(timezone.utc).isoformat(),
                    }
                )

        return report

    def list_backups(self, storage_name: Optional[str] = None, limit: Optional[int] = None) -> List[BackupArtifact]:
        """
        List artifacts on one storage, newest first.

        Raises:
            ValueError: If the named storage is not configured
        """
        name = storage_name or self.settings.primary_storage
        storage = next((s for s in self.storages if s.name == name), None)
        if storage is None:
            raise ValueError(f"Storage not configured: {name}")

        backups = storage.list()
        if limit:
            backups = backups[:limit]
        return backups

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self, filename: str) -> RestoreResult:
        """
        Restore the database from an artifact on the primary storage.

        Never raises for operational failures; see RestoreResult.error.
        """
        logger.info(f"Starting backup restoration: {filename}")

        try:
            with run_lock(self.settings.temp_dir, self.settings.database.database):
                return self._restore(filename)
        except BackupInProgress as e:
            logger.warning(f"Cannot restore {filename}: {e}")
            return RestoreResult(success=False, filename=filename, error=str(e))
        except LockUnavailable as e:
            logger.error(f"Cannot restore {filename}: {e}")
            return RestoreResult(success=False, filename=filename, error=str(e))

    def _restore(self, filename: str) -> RestoreResult:
        work_dir = None

        try:
            primary = self.primary
            if primary is None:
                raise RestoreNotFound("Primary storage is not configured")
            if not primary.exists(filename):
                raise RestoreNotFound(f"Backup file not found: {filename}")

            os.makedirs(self.settings.temp_dir, exist_ok=True)
            work_dir = tempfile.mkdtemp(prefix='pgkeeper_restore_', dir=self.settings.temp_dir)
            current = os.path.join(work_dir, os.path.basename(filename))

            if not primary.download(filename, current):
                raise StorageError(f"Failed to download backup file: {filename}")

            if self.cipher is not None:
                decrypted = _strip_suffix(current, '.enc', '.decrypted')
                try:
                    self.cipher.decrypt_file(current, decrypted)
                except EncryptionFailed as e:
                    raise RestoreDecryptFailed(f"Failed to decrypt {filename}: {e}")
                os.remove(current)
                current = decrypted
                logger.info("Backup file decrypted")

            if self.settings.compression_enabled:
                decompressed = _strip_suffix(current, '.gz', '.sql')
                try:
                    decompress_file(current, decompressed)
                except CompressionFailed as e:
                    raise RestoreDecompressFailed(f"Failed to decompress {filename}: {e}")
                os.remove(current)
                current = decompressed
                logger.info("Backup file decompressed")

            try:
                self.database_tools.restore(current)
            finally:
                if os.path.exists(current):
                    os.remove(current)

            logger.info(f"Backup restoration completed: {filename}")
            return RestoreResult(success=True, filename=filename)

        except (BackupError, OSError) as e:
            logger.error(f"Backup restoration of {filename} failed ({type(e).__name__}): {e}")
            return RestoreResult(success=False, filename=filename, error=str(e))

        finally:
            if work_dir and os.path.exists(work_dir):
                shutil.rmtree(work_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def _notify_large_backup(self, filename: str, size: int):
        logger.warning(f"Large backup detected: {filename} ({size / MIB:.2f} MB)")

        if self.settings.notifications.on_large_backup:
            self._notify(
                'warning',
                'Large Backup Detected',
                f"Backup {filename} is unusually large ({size / MIB:.2f}MB)",
                {'filename': filename, 'size': size, 'threshold': self.settings.health.max_backup_size_mb}
            )

    def _notify(self, level: str, title: str, message: str, data: dict):
        """Send a notification; a broken sink must never change a backup outcome."""
        if self.notifier is None:
            return

        try:
            self.notifier.notify(
                user_id=self.settings.notifications.user_id,
                type=level,
                title=title,
                message=message,
                data=data,
            )
        except Exception as e:
            logger.error(f"Failed to send '{title}' notification: {e}")


def create_executor(app=None) -> BackupExecutor:
    """
    Build the executor for a Flask app, once per app.

    Storage adapters and clients are created on first use and reused by
    later calls (CLI commands, scheduled jobs).

    Args:
        app: Flask app (default: current_app)

    Returns:
        BackupExecutor
    """
    from flask import current_app
    from pgkeeper import db
    from pgkeeper.notifications import NotificationService

    app = app or current_app._get_current_object()
    executor = app.extensions.get('pgkeeper_executor')

    if executor is None:
        settings = BackupSettings.from_config(app.config)
        with app.app_context():
            engine = db.engine
        executor = BackupExecutor(
            settings,
            change_detector=ChangeDetector(engine, settings.excluded_tables),
            notifier=NotificationService(app),
        )
        app.extensions['pgkeeper_executor'] = executor

    return executor
