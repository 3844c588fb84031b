import os
import tempfile

from dumper.errors import ConfigurationError


class Config:
    """Base configuration"""

    # MongoDB
    MONGO_URI = os.environ.get('MONGO_URI', '')
    MONGO_DATABASE = os.environ.get('MONGO_DATABASE', '')
    MONGODUMP_BIN = os.environ.get('MONGODUMP_BIN') or 'mongodump'

    # Environment tag used in backup names ("staging" or "production")
    ENVIRONMENT = os.environ.get('ENVIRONMENT', '')

    # S3-compatible storage (Backblaze B2, MinIO, AWS)
    S3_ENDPOINT = os.environ.get('S3_ENDPOINT', '')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_BUCKET = os.environ.get('S3_BUCKET', '')
    S3_ACCESS_KEY = os.environ.get('S3_ACCESS_KEY', '')
    S3_SECRET_KEY = os.environ.get('S3_SECRET_KEY', '')

    # Local working directory for dumps and archives
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(tempfile.gettempdir(), 'mongodb-dumps')

    # Scheduler: seconds between runs, 0 runs a single backup and exits
    BACKUP_INTERVAL = os.environ.get('BACKUP_INTERVAL') or 0

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE', '')
    DEBUG = False


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def load_settings(config_name=None, overrides=None) -> dict:
    """
    Resolve settings from a configuration class plus explicit overrides.

    Args:
        config_name: Key of `config` (default: DUMPER_ENV or 'production')
        overrides: Values that replace the class defaults; None values are ignored

    Returns:
        Dict of upper-case setting names to values

    Raises:
        ConfigurationError: If the configuration name is unknown or the
            interval is not a number
    """
    if config_name is None:
        config_name = os.environ.get('DUMPER_ENV', 'production')

    if config_name not in config:
        raise ConfigurationError(
            f"Unknown configuration '{config_name}', expected one of: {', '.join(sorted(config))}"
        )

    config_class = config[config_name]
    settings = {
        key: getattr(config_class, key)
        for key in dir(config_class)
        if key.isupper()
    }

    for key, value in (overrides or {}).items():
        if value is not None:
            settings[key] = value

    try:
        settings['BACKUP_INTERVAL'] = float(settings['BACKUP_INTERVAL'] or 0)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Backup interval must be a number of seconds, got {settings['BACKUP_INTERVAL']!r}"
        )

    return settings
