import os
import logging
from logging.handlers import RotatingFileHandler


logger = logging.getLogger(__name__)

KNOWN_ENVIRONMENTS = ('staging', 'production')


def configure_logging(settings):
    """Configure application logging"""

    # Set log level based on configuration
    log_level = logging.DEBUG if settings.get('DEBUG') else logging.getLevelName(
        str(settings.get('LOG_LEVEL') or 'INFO').upper()
    )
    if not isinstance(log_level, int):
        log_level = logging.INFO

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s [%(threadName)s]: %(message)s'
    ))
    handlers.append(console_handler)

    # File handler
    log_file = settings.get('LOG_FILE')
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        ))
        handlers.append(file_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # botocore logs request bodies at DEBUG
    logging.getLogger('botocore').setLevel(max(log_level, logging.INFO))
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.INFO))

    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_executor(config_name=None, overrides=None):
    """
    Dumper factory.

    Resolves settings, configures logging and builds a BackupExecutor.
    Every configuration problem is raised here, before any run starts.

    Args:
        config_name: Key of dumper.config.config
        overrides: Settings taking precedence over the environment

    Returns:
        (BackupExecutor, settings dict)

    Raises:
        ConfigurationError: If settings are incomplete or mongodump is missing
    """
    from dumper.config import load_settings
    from dumper.errors import ConfigurationError
    from dumper.models import BackupJob
    from dumper.backup.executor import BackupExecutor
    from dumper.utils.formatting import redact_key, redact_uri

    settings = load_settings(config_name, overrides)
    configure_logging(settings)

    logger.info(
        "Starting MongoDB dumper: "
        f"mongo_uri={redact_uri(settings['MONGO_URI'])}, "
        f"database={settings['MONGO_DATABASE'] or '-'}, "
        f"environment={settings['ENVIRONMENT'] or '-'}, "
        f"s3_endpoint={settings['S3_ENDPOINT']}, "
        f"s3_region={settings['S3_REGION']}, "
        f"s3_bucket={settings['S3_BUCKET']}, "
        f"s3_access_key={redact_key(settings['S3_ACCESS_KEY'])}, "
        f"temp_dir={settings['TEMP_DIR']}, "
        f"interval={settings['BACKUP_INTERVAL']}s"
    )

    interval = settings['BACKUP_INTERVAL']
    if interval < 0 or 0 < interval < 1:
        raise ConfigurationError(
            f"Backup interval must be 0 (one-time) or at least 1 second, got {interval}"
        )

    environment = settings['ENVIRONMENT']
    if environment and environment not in KNOWN_ENVIRONMENTS:
        logger.warning(
            f"Environment should be 'staging' or 'production', using '{environment}' anyway"
        )

    job = BackupJob.from_settings(settings)

    try:
        executor = BackupExecutor(job, dump_binary=settings['MONGODUMP_BIN'])
    except OSError as e:
        raise ConfigurationError(f"Failed to create temporary directory {job.temp_dir}: {e}")

    return executor, settings
