"""
Backup data model and filename grammar.

Filenames look like:
    backup-{full|differential}-{YYYY-MM-DD}-{HHMMSS}.sql[.gz][.enc]

The sidecar manifest of an artifact shares its stem:
    backup-{type}-{YYYY-MM-DD}-{HHMMSS}.manifest.json
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional


FULL = 'full'
DIFFERENTIAL = 'differential'
BACKUP_TYPES = (FULL, DIFFERENTIAL)

MANIFEST_SUFFIX = '.manifest.json'

_FILENAME_RE = re.compile(
    r'^backup-(?P<type>full|differential)-(?P<date>\d{4}-\d{2}-\d{2})-(?P<time>\d{6})'
    r'\.sql(?:\.gz)?(?:\.enc)?$'
)
_STEM_RE = re.compile(r'\.sql(?:\.gz)?(?:\.enc)?$')


class BackupError(Exception):
    """Base class for every backup engine failure."""
    pass


@dataclass(frozen=True)
class BackupArtifact:
    """A physical backup file as seen by one storage."""

    filename: str
    type: str
    size: int
    created_at: datetime
    path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'filename': self.filename,
            'type': self.type,
            'size': self.size,
            'createdAt': self.created_at.isoformat(),
            'path': self.path,
        }


@dataclass
class Manifest:
    """Sidecar metadata uploaded next to every artifact."""

    type: str
    created_at: datetime
    tables: List[str] = field(default_factory=list)
    full_backup_reference: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            'type': self.type,
            'createdAt': self.created_at.isoformat(),
            'tables': list(self.tables),
        }
        if self.full_backup_reference:
            data['fullBackupReference'] = self.full_backup_reference
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'Manifest':
        return cls(
            type=data['type'],
            created_at=datetime.fromisoformat(data['createdAt']),
            tables=list(data.get('tables', [])),
            full_backup_reference=data.get('fullBackupReference'),
        )


@dataclass
class BackupResult:
    """Outcome of one backup run. Returned to the caller, never persisted."""

    success: bool
    filename: str
    type: str
    size: int = 0
    duration: float = 0.0
    storages: Dict[str, bool] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            'success': self.success,
            'filename': self.filename,
            'type': self.type,
            'size': self.size,
            'duration': self.duration,
            'storages': dict(self.storages),
        }
        if self.error is not None:
            data['error'] = self.error
        return data


@dataclass
class HealthReport:
    healthy: bool
    issues: List[str] = field(default_factory=list)
    storages: Dict[str, bool] = field(default_factory=dict)
    last_backup: Optional[BackupArtifact] = None

    def to_dict(self) -> dict:
        return {
            'healthy': self.healthy,
            'issues': list(self.issues),
            'storages': dict(self.storages),
            'lastBackup': self.last_backup.to_dict() if self.last_backup else None,
        }


@dataclass
class CleanupSummary:
    deleted: int = 0
    kept: int = 0
    errors: int = 0


@dataclass
class RestoreResult:
    success: bool
    filename: str
    error: Optional[str] = None


def generate_backup_filename(
    backup_type: str,
    compression: bool,
    encryption: bool,
    now: Optional[datetime] = None
) -> str:
    """
    Build the artifact filename for a new run.

    Suffixes are appended in pipeline order (.sql, .gz, .enc) so that
    restore can peel them off in reverse.

    Args:
        backup_type: 'full' or 'differential'
        compression: Whether the gzip stage is enabled
        encryption: Whether the encryption stage is enabled
        now: Timestamp to embed (default: current UTC time)

    Returns:
        Filename (without path)
    """
    if backup_type not in BACKUP_TYPES:
        raise ValueError(f"Invalid backup type: {backup_type}")

    now = now or datetime.now(timezone.utc)
    filename = f"backup-{backup_type}-{now.strftime('%Y-%m-%d')}-{now.strftime('%H%M%S')}.sql"

    if compression:
        filename += '.gz'
    if encryption:
        filename += '.enc'

    return filename


def manifest_filename(filename: str) -> str:
    """Return the manifest name for an artifact filename."""
    return _STEM_RE.sub('', filename) + MANIFEST_SUFFIX


def parse_backup_filename(filename: str) -> Optional[tuple]:
    """
    Parse an artifact filename.

    Args:
        filename: Basename of a stored file

    Returns:
        (type, created_at) with created_at in UTC, or None when the name
        does not follow the artifact grammar (manifests included)
    """
    match = _FILENAME_RE.match(filename)
    if not match:
        return None

    try:
        created_at = datetime.strptime(
            f"{match.group('date')} {match.group('time')}", '%Y-%m-%d %H%M%S'
        ).replace(tzinfo=timezone.utc)
    except ValueError:
        return None

    return match.group('type'), created_at


def artifact_from_name(filename: str, size: int, path: Optional[str] = None) -> Optional[BackupArtifact]:
    """Build a BackupArtifact from a stored filename, or None if it is not one."""
    parsed = parse_backup_filename(filename)
    if parsed is None:
        return None

    backup_type, created_at = parsed
    return BackupArtifact(
        filename=filename,
        type=backup_type,
        size=size,
        created_at=created_at,
        path=path,
    )


def newest_first(artifacts: List[BackupArtifact]) -> List[BackupArtifact]:
    return sorted(artifacts, key=lambda a: a.created_at, reverse=True)
