import os
import tempfile


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Database being backed up (notifications are stored there as well)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'postgresql://postgres@localhost:5432/postgres'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Working directory for dumps in progress
    BACKUP_TEMP_DIR = os.environ.get('BACKUP_TEMP_DIR') or '/data/temp'

    # Storages
    BACKUP_PRIMARY_STORAGE = os.environ.get('BACKUP_PRIMARY_STORAGE', 'local')

    BACKUP_LOCAL_ENABLED = os.environ.get('BACKUP_LOCAL_ENABLED', 'true')
    BACKUP_LOCAL_PATH = os.environ.get('BACKUP_LOCAL_PATH') or '/data/backups'

    BACKUP_S3_ENABLED = os.environ.get('BACKUP_S3_ENABLED', 'false')
    BACKUP_S3_BUCKET = os.environ.get('BACKUP_S3_BUCKET', '')
    BACKUP_S3_REGION = os.environ.get('BACKUP_S3_REGION', 'us-east-1')
    BACKUP_S3_ENDPOINT = os.environ.get('BACKUP_S3_ENDPOINT', '')
    BACKUP_S3_ACCESS_KEY_ID = os.environ.get('BACKUP_S3_ACCESS_KEY_ID', '')
    BACKUP_S3_SECRET_ACCESS_KEY = os.environ.get('BACKUP_S3_SECRET_ACCESS_KEY', '')
    BACKUP_S3_PATH = os.environ.get('BACKUP_S3_PATH', 'backups')

    BACKUP_WEBDAV_ENABLED = os.environ.get('BACKUP_WEBDAV_ENABLED', 'false')
    BACKUP_WEBDAV_URL = os.environ.get('BACKUP_WEBDAV_URL', '')
    BACKUP_WEBDAV_USERNAME = os.environ.get('BACKUP_WEBDAV_USERNAME', '')
    BACKUP_WEBDAV_PASSWORD = os.environ.get('BACKUP_WEBDAV_PASSWORD', '')
    BACKUP_WEBDAV_PATH = os.environ.get('BACKUP_WEBDAV_PATH', '/backups')
    BACKUP_WEBDAV_NEXTCLOUD = os.environ.get('BACKUP_WEBDAV_NEXTCLOUD', 'false')

    # Pipeline
    BACKUP_COMPRESSION_ENABLED = os.environ.get('BACKUP_COMPRESSION_ENABLED', 'true')
    BACKUP_COMPRESSION_LEVEL = int(os.environ.get('BACKUP_COMPRESSION_LEVEL', 6))
    BACKUP_ENCRYPTION_ENABLED = os.environ.get('BACKUP_ENCRYPTION_ENABLED', 'true')
    BACKUP_ENCRYPTION_KEY = os.environ.get('BACKUP_ENCRYPTION_KEY')
    BACKUP_EXCLUDED_TABLES = os.environ.get('BACKUP_EXCLUDED_TABLES', '')
    BACKUP_FULL_BACKUP_WEEKDAY = int(os.environ.get('BACKUP_FULL_BACKUP_WEEKDAY', 7))
    BACKUP_REQUIRE_STORAGE = os.environ.get('BACKUP_REQUIRE_STORAGE', 'false')
    BACKUP_STORAGE_TIMEOUT = os.environ.get('BACKUP_STORAGE_TIMEOUT', '600')
    BACKUP_DUMP_TIMEOUT = os.environ.get('BACKUP_DUMP_TIMEOUT', '')

    # Retention
    BACKUP_RETENTION_DAILY = int(os.environ.get('BACKUP_RETENTION_DAILY', 7))
    BACKUP_RETENTION_WEEKLY = int(os.environ.get('BACKUP_RETENTION_WEEKLY', 4))
    BACKUP_RETENTION_MONTHLY = int(os.environ.get('BACKUP_RETENTION_MONTHLY', 3))
    BACKUP_RETENTION_YEARLY = int(os.environ.get('BACKUP_RETENTION_YEARLY', 1))

    # Health thresholds
    BACKUP_MAX_AGE_HOURS = float(os.environ.get('BACKUP_MAX_AGE_HOURS', 25))
    BACKUP_MAX_SIZE_MB = float(os.environ.get('BACKUP_MAX_SIZE_MB', 500))
    BACKUP_MIN_FREE_SPACE_GB = float(os.environ.get('BACKUP_MIN_FREE_SPACE_GB', 5))

    # Notifications
    BACKUP_NOTIFY_SUCCESS = os.environ.get('BACKUP_NOTIFY_SUCCESS', 'false')
    BACKUP_NOTIFY_FAILURE = os.environ.get('BACKUP_NOTIFY_FAILURE', 'true')
    BACKUP_NOTIFY_LARGE = os.environ.get('BACKUP_NOTIFY_LARGE', 'true')
    BACKUP_NOTIFY_HEALTH_CHECK = os.environ.get('BACKUP_NOTIFY_HEALTH_CHECK', 'true')
    BACKUP_NOTIFY_USER_ID = int(os.environ.get('BACKUP_NOTIFY_USER_ID', 1))

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'false').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_TIME = os.environ.get('BACKUP_TIME', '02:00')
    BACKUP_CLEANUP_TIME = os.environ.get('BACKUP_CLEANUP_TIME', '03:00')
    BACKUP_HEALTH_CHECK_INTERVAL_HOURS = int(os.environ.get('BACKUP_HEALTH_CHECK_INTERVAL_HOURS', 6))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    BACKUP_TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    BACKUP_LOCAL_PATH = os.path.join(DATA_DIR, 'backups')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'pgkeeper-tests', 'logs')
    BACKUP_TEMP_DIR = os.path.join(tempfile.gettempdir(), 'pgkeeper-tests', 'temp')
    BACKUP_LOCAL_PATH = os.path.join(tempfile.gettempdir(), 'pgkeeper-tests', 'backups')
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
