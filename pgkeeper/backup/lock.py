"""
Advisory lock allowing one backup or restore per database at a time.

Two layers: a threading.Lock per database name for callers in this
process, and an fcntl.flock on a lock file for other processes sharing the
temp directory (several workers, cron plus a manual run, ...).
"""

import fcntl
import os
import threading
from contextlib import contextmanager

from .artifacts import BackupError


class BackupInProgress(BackupError):
    """Raised when another run already holds the lock for the database."""
    pass


class LockUnavailable(BackupError):
    """Raised when the lock file cannot be created or locked."""
    pass


_process_locks = {}
_process_locks_guard = threading.Lock()


def _process_lock(name: str) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(name, threading.Lock())


@contextmanager
def run_lock(lock_dir: str, database: str):
    """
    Hold the run lock for `database` without waiting.

    Args:
        lock_dir: Directory for the lock file
        database: Name of the database the run targets

    Raises:
        BackupInProgress: If the lock is already held
        LockUnavailable: If the lock file cannot be opened or locked
    """
    local_lock = _process_lock(database)
    if not local_lock.acquire(blocking=False):
        raise BackupInProgress(f"Another backup or restore of {database} is already running")

    try:
        lock_path = os.path.join(lock_dir, f"{database}.lock")
        try:
            os.makedirs(lock_dir, exist_ok=True)
            handle = open(lock_path, 'a')
        except OSError as e:
            raise LockUnavailable(f"Cannot open lock file {lock_path}: {e}")

        with handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise BackupInProgress(
                    f"Another process is already backing up or restoring {database}"
                )
            except OSError as e:
                raise LockUnavailable(f"Cannot lock {lock_path}: {e}")

            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    finally:
        local_lock.release()
