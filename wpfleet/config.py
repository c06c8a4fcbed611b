import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, '') else default


class Config:
    """Base configuration"""

    SECRET_KEY = os.environ.get('SECRET_KEY') or 'wpfleet-read-only-api'

    # Database (run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/wpfleet.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Site discovery
    SITES_ROOT = os.environ.get('SITES_ROOT') or '/home'
    DISCOVERY_MAX_DEPTH = _env_int('DISCOVERY_MAX_DEPTH', 3)
    MARKER_FILENAME = os.environ.get('MARKER_FILENAME') or 'wp-config.php'

    # Remote store: rclone, s3 or local
    REMOTE_BACKEND = os.environ.get('REMOTE_BACKEND') or 'rclone'
    REMOTE_ROOT = os.environ.get('REMOTE_ROOT') or 'dropbox:wp-backups'
    RCLONE_BINARY = os.environ.get('RCLONE_BINARY') or 'rclone'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_ACCESS_KEY = os.environ.get('S3_ACCESS_KEY')
    S3_SECRET_KEY = os.environ.get('S3_SECRET_KEY')
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')

    # Retention
    RETENTION_DAILY_KEEP = _env_int('RETENTION_DAILY_KEEP', 7)
    RETENTION_WEEKLY_KEEP = _env_int('RETENTION_WEEKLY_KEEP', 4)
    RETENTION_MONTHLY_KEEP = _env_int('RETENTION_MONTHLY_KEEP', 2)
    WEEKLY_PROMOTION_WEEKDAY = _env_int('WEEKLY_PROMOTION_WEEKDAY', 7)  # ISO weekday, 7 = Sunday
    MONTHLY_PROMOTION_DAY = _env_int('MONTHLY_PROMOTION_DAY', 1)

    # Execution
    MAX_WORKERS = _env_int('MAX_WORKERS', 2)
    COMMAND_TIMEOUT = _env_float('COMMAND_TIMEOUT', 6 * 3600)

    # Database engine
    MYSQL_DEFAULTS_FILE = os.environ.get('MYSQL_DEFAULTS_FILE') or '/root/.my.cnf'
    MYSQL_USER = os.environ.get('MYSQL_USER')
    MYSQL_PASSWORD = os.environ.get('MYSQL_PASSWORD')
    MYSQL_HOST = os.environ.get('MYSQL_HOST')
    MYSQLDUMP_BINARY = os.environ.get('MYSQLDUMP_BINARY') or 'mysqldump'
    MYSQL_BINARY = os.environ.get('MYSQL_BINARY') or 'mysql'

    # Scratch and migration directories
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    MIGRATE_ROOT = os.environ.get('MIGRATE_ROOT') or '/root/wp-migrate'

    # Restore
    RESTORE_TARGET_TEMPLATE = os.environ.get('RESTORE_TARGET_TEMPLATE') or '/home/{domain}/public_html'
    RESTORE_FALLBACK_OWNER = os.environ.get('RESTORE_FALLBACK_OWNER') or 'root'
    RESTORE_FALLBACK_GROUP = os.environ.get('RESTORE_FALLBACK_GROUP') or 'root'
    RESTORE_MAX_PAIR_SKEW_HOURS = _env_float('RESTORE_MAX_PAIR_SKEW_HOURS', 36)  # 0 disables the check
    RESTORE_CONFIG_SEARCH_DEPTH = _env_int('RESTORE_CONFIG_SEARCH_DEPTH', 5)

    # Migration push
    SSH_KEY_FILE = os.environ.get('SSH_KEY_FILE')
    SSH_PASSWORD = os.environ.get('SSH_PASSWORD')
    SSH_CONNECT_TIMEOUT = _env_float('SSH_CONNECT_TIMEOUT', 30)

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'
    LOG_LEVEL = os.environ.get('LOG_LEVEL')
    LOG_MAX_BYTES = _env_int('LOG_MAX_BYTES', 10 * 1024 * 1024)
    LOG_BACKUP_COUNT = _env_int('LOG_BACKUP_COUNT', 10)

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() == 'true'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    DAILY_BACKUP_CRON = os.environ.get('DAILY_BACKUP_CRON') or '30 3 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "wpfleet.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    MIGRATE_ROOT = os.path.join(DATA_DIR, 'wp-migrate')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    REMOTE_BACKEND = os.environ.get('REMOTE_BACKEND') or 'local'
    REMOTE_ROOT = os.environ.get('REMOTE_ROOT') or os.path.join(DATA_DIR, 'remote')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    REMOTE_BACKEND = 'local'
    MAX_WORKERS = 1
    COMMAND_TIMEOUT = 60


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
