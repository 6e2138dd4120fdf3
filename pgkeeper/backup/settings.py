"""
Typed backup settings built from the flat application configuration.

The backup engine only ever sees these frozen dataclasses, so it can run
(and be tested) without a Flask application.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from sqlalchemy.engine import make_url

from .retention import RetentionPolicy


STORAGE_NAMES = ('local', 's3', 'webdav')
DEFAULT_DATABASE_URL = 'postgresql://postgres@localhost:5432/postgres'


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


def _as_optional_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    return float(value)


def _as_list(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(item.strip() for item in value if item and item.strip())


@dataclass(frozen=True)
class DatabaseTarget:
    """Connection parameters handed to pg_dump and psql."""

    host: str = 'localhost'
    port: int = 5432
    user: str = 'postgres'
    password: Optional[str] = None
    database: str = 'postgres'

    @classmethod
    def from_url(cls, url: str) -> 'DatabaseTarget':
        parsed = make_url(url)
        return cls(
            host=parsed.host or 'localhost',
            port=parsed.port or 5432,
            user=parsed.username or 'postgres',
            password=parsed.password,
            database=parsed.database or 'postgres',
        )

    def connection_args(self) -> list:
        return ['-h', self.host, '-p', str(self.port), '-U', self.user, '-d', self.database]

    def process_env(self) -> Dict[str, str]:
        """Extra environment for the child process (password never goes on argv)."""
        if self.password:
            return {'PGPASSWORD': self.password}
        return {}


@dataclass(frozen=True)
class LocalStorageSettings:
    enabled: bool = True
    path: str = '/data/backups'


@dataclass(frozen=True)
class S3StorageSettings:
    enabled: bool = False
    bucket: str = ''
    region: str = 'us-east-1'
    endpoint: Optional[str] = None
    access_key: str = ''
    secret_key: str = ''
    path: str = 'backups'


@dataclass(frozen=True)
class WebDAVStorageSettings:
    enabled: bool = False
    url: str = ''
    username: str = ''
    password: str = ''
    path: str = '/backups'
    nextcloud: bool = False


@dataclass(frozen=True)
class HealthThresholds:
    max_backup_age_hours: float = 25
    max_backup_size_mb: float = 500
    min_free_space_gb: float = 5


@dataclass(frozen=True)
class NotificationSettings:
    on_success: bool = False
    on_failure: bool = True
    on_large_backup: bool = True
    on_health_check_failure: bool = True
    user_id: int = 1


@dataclass(frozen=True)
class BackupSettings:
    """
    Complete configuration of the backup engine.

    Raises:
        ValueError: On inconsistent settings (see __post_init__)
    """

    database: DatabaseTarget = field(default_factory=DatabaseTarget)
    temp_dir: str = '/data/temp'
    local: LocalStorageSettings = field(default_factory=LocalStorageSettings)
    s3: S3StorageSettings = field(default_factory=S3StorageSettings)
    webdav: WebDAVStorageSettings = field(default_factory=WebDAVStorageSettings)
    primary_storage: str = 'local'
    compression_enabled: bool = True
    compression_level: int = 6
    encryption_enabled: bool = True
    encryption_key: Optional[str] = None
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    health: HealthThresholds = field(default_factory=HealthThresholds)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    excluded_tables: Tuple[str, ...] = ()
    full_backup_weekday: int = 7
    require_storage: bool = False
    storage_timeout: Optional[float] = 600
    dump_timeout: Optional[float] = None

    def __post_init__(self):
        if self.primary_storage not in STORAGE_NAMES:
            raise ValueError(
                f"Invalid primary storage: {self.primary_storage}. "
                f"Valid options: {list(STORAGE_NAMES)}"
            )
        if not 0 <= self.compression_level <= 9:
            raise ValueError(f"Compression level must be between 0 and 9, got {self.compression_level}")
        if self.encryption_enabled and not self.encryption_key:
            raise ValueError("Encryption is enabled but no encryption key is configured")
        if not 1 <= self.full_backup_weekday <= 7:
            raise ValueError(f"Full backup weekday must be between 1 (Monday) and 7 (Sunday), got {self.full_backup_weekday}")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build settings from a flat mapping such as Flask's app.config.

        Args:
            config: Mapping with SQLALCHEMY_DATABASE_URI and BACKUP_* keys

        Returns:
            BackupSettings instance
        """
        get = config.get

        return cls(
            database=DatabaseTarget.from_url(get('SQLALCHEMY_DATABASE_URI') or DEFAULT_DATABASE_URL),
            temp_dir=get('BACKUP_TEMP_DIR', '/data/temp'),
            local=LocalStorageSettings(
                enabled=_as_bool(get('BACKUP_LOCAL_ENABLED', True)),
                path=get('BACKUP_LOCAL_PATH', '/data/backups'),
            ),
            s3=S3StorageSettings(
                enabled=_as_bool(get('BACKUP_S3_ENABLED', False)),
                bucket=get('BACKUP_S3_BUCKET', ''),
                region=get('BACKUP_S3_REGION', 'us-east-1'),
                endpoint=get('BACKUP_S3_ENDPOINT') or None,
                access_key=get('BACKUP_S3_ACCESS_KEY_ID', ''),
                secret_key=get('BACKUP_S3_SECRET_ACCESS_KEY', ''),
                path=get('BACKUP_S3_PATH', 'backups'),
            ),
            webdav=WebDAVStorageSettings(
                enabled=_as_bool(get('BACKUP_WEBDAV_ENABLED', False)),
                url=get('BACKUP_WEBDAV_URL', ''),
                username=get('BACKUP_WEBDAV_USERNAME', ''),
                password=get('BACKUP_WEBDAV_PASSWORD', ''),
                path=get('BACKUP_WEBDAV_PATH', '/backups'),
                nextcloud=_as_bool(get('BACKUP_WEBDAV_NEXTCLOUD', False)),
            ),
            primary_storage=get('BACKUP_PRIMARY_STORAGE', 'local'),
            compression_enabled=_as_bool(get('BACKUP_COMPRESSION_ENABLED', True)),
            compression_level=int(get('BACKUP_COMPRESSION_LEVEL', 6)),
            encryption_enabled=_as_bool(get('BACKUP_ENCRYPTION_ENABLED', True)),
            encryption_key=get('BACKUP_ENCRYPTION_KEY') or get('SECRET_KEY'),
            retention=RetentionPolicy(
                daily_days=int(get('BACKUP_RETENTION_DAILY', 7)),
                weekly_weeks=int(get('BACKUP_RETENTION_WEEKLY', 4)),
                monthly_months=int(get('BACKUP_RETENTION_MONTHLY', 3)),
                yearly_years=int(get('BACKUP_RETENTION_YEARLY', 1)),
            ),
            health=HealthThresholds(
                max_backup_age_hours=float(get('BACKUP_MAX_AGE_HOURS', 25)),
                max_backup_size_mb=float(get('BACKUP_MAX_SIZE_MB', 500)),
                min_free_space_gb=float(get('BACKUP_MIN_FREE_SPACE_GB', 5)),
            ),
            notifications=NotificationSettings(
                on_success=_as_bool(get('BACKUP_NOTIFY_SUCCESS', False)),
                on_failure=_as_bool(get('BACKUP_NOTIFY_FAILURE', True)),
                on_large_backup=_as_bool(get('BACKUP_NOTIFY_LARGE', True)),
                on_health_check_failure=_as_bool(get('BACKUP_NOTIFY_HEALTH_CHECK', True)),
                user_id=int(get('BACKUP_NOTIFY_USER_ID', 1)),
            ),
            excluded_tables=_as_list(get('BACKUP_EXCLUDED_TABLES')),
            full_backup_weekday=int(get('BACKUP_FULL_BACKUP_WEEKDAY', 7)),
            require_storage=_as_bool(get('BACKUP_REQUIRE_STORAGE', False)),
            storage_timeout=_as_optional_float(get('BACKUP_STORAGE_TIMEOUT', 600)),
            dump_timeout=_as_optional_float(get('BACKUP_DUMP_TIMEOUT')),
        )
