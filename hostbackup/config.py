import os
from urllib.parse import quote_plus


class ConfigurationError(Exception):
    """Raised when the environment cannot support a backup run."""
    pass


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_list(name, default, separator=','):
    value = os.environ.get(name)
    if not value:
        return list(default)
    return [item.strip() for item in value.split(separator) if item.strip()]


def _database_url():
    """Build the source database URL from DATABASE_URL or DB_HOST/DB_USER/DB_PASSWORD."""
    url = os.environ.get('DATABASE_URL')
    if url:
        return url

    host = os.environ.get('DB_HOST', 'localhost')
    user = os.environ.get('DB_USER', 'backup')
    password = os.environ.get('DB_PASSWORD', '')
    return f"mysql+pymysql://{quote_plus(user)}:{quote_plus(password)}@{host}/?charset=utf8mb4"


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        import secrets
        SECRET_KEY = secrets.token_hex(32)

    # Run history
    SQLALCHEMY_DATABASE_URI = os.environ.get('HISTORY_DATABASE_URL') or 'sqlite:////data/hostbackup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Source database server
    DATABASE_URL = _database_url()
    SKIP_DATABASES = _env_list('SKIP_DATABASES', ['information_schema', 'performance_schema', 'mysql', 'sys'])

    # Remote store
    REMOTE_PROTOCOL = os.environ.get('REMOTE_PROTOCOL', 'ftp')  # ftp, ftps, sftp, s3
    REMOTE_HOST = os.environ.get('REMOTE_HOST') or os.environ.get('FTP_HOST', '')
    REMOTE_PORT = _env_int('REMOTE_PORT', 0)  # 0 = protocol default
    REMOTE_USER = os.environ.get('REMOTE_USER') or os.environ.get('FTP_USER', '')
    REMOTE_PASSWORD = os.environ.get('REMOTE_PASSWORD') or os.environ.get('FTP_PASSWORD', '')
    REMOTE_DIR = os.environ.get('REMOTE_DIR', '/backups')
    REMOTE_PASSIVE = _env_bool('REMOTE_PASSIVE', True)
    S3_BUCKET = os.environ.get('S3_BUCKET', '')
    S3_REGION = os.environ.get('S3_REGION', 'us-east-1')

    # Paths
    SOURCE_DIR = os.environ.get('SOURCE_DIR') or '/data/source'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # Retention
    REMOTE_RETENTION_COUNT = _env_int('REMOTE_RETENTION_COUNT', 14)
    LOCAL_RETENTION_COUNT = _env_int('LOCAL_RETENTION_COUNT', 5)

    # Compression
    COMPRESSION_LEVEL = _env_int('COMPRESSION_LEVEL', 6)  # zip deflate level 1-9
    GZIP_THRESHOLD_MB = _env_int('GZIP_THRESHOLD_MB', 20)

    # Time budget
    MAX_RUN_SECONDS = _env_int('MAX_RUN_SECONDS', 900)
    TIMEOUT_WARNING_SECONDS = _env_int('TIMEOUT_WARNING_SECONDS', 840)

    # Transfer
    UPLOAD_TIMEOUT_SECONDS = _env_int('UPLOAD_TIMEOUT_SECONDS', 600)
    RESUMABLE_THRESHOLD_MB = _env_int('RESUMABLE_THRESHOLD_MB', 100)
    TRANSFER_MAX_ATTEMPTS = _env_int('TRANSFER_MAX_ATTEMPTS', 3)
    TRANSFER_RETRY_DELAY = _env_int('TRANSFER_RETRY_DELAY', 2)

    # Notifications
    NOTIFY_ON_SUCCESS = _env_bool('NOTIFY_ON_SUCCESS', True)
    NOTIFY_ON_FAILURE = _env_bool('NOTIFY_ON_FAILURE', True)
    NOTIFY_EMAIL = os.environ.get('NOTIFY_EMAIL', '')
    EMAIL_FROM = os.environ.get('EMAIL_FROM', 'backup@localhost')
    SMTP_HOST = os.environ.get('SMTP_HOST', '')
    SMTP_PORT = _env_int('SMTP_PORT', 25)

    # Regex patterns, matched case-insensitively against absolute and relative paths
    EXCLUDE_PATTERNS = _env_list('EXCLUDE_PATTERNS', [
        r'/cache/',
        r'/tmp/',
        r'/temp/',
        r'/logs/',
        r'/sessions/',
        r'/\.git/',
        r'/node_modules/',
        r'/\.svn/',
        r'/\.DS_Store$',
        r'/Thumbs\.db$',
    ], separator=';')

    # Web trigger
    WEB_ACCESS_TOKEN = os.environ.get('WEB_ACCESS_TOKEN', '')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "hostbackup.db")}'
    SOURCE_DIR = os.environ.get('SOURCE_DIR') or os.path.join(DATA_DIR, 'source')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
