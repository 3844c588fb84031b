#!/usr/bin/env python3
"""MongoDB dumper runner"""
import argparse
import logging
import signal
import sys

from dotenv import load_dotenv


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Scheduled MongoDB backups to S3-compatible storage')
    parser.add_argument('--env-file', default='.env', help='Path to .env file to load environment variables from')
    parser.add_argument('--config', dest='config_name', choices=['development', 'production'], default=None)
    parser.add_argument('--mongo-uri', help='MongoDB connection string URI')
    parser.add_argument('--database', help='MongoDB database name (optional)')
    parser.add_argument('--env', dest='environment', help='Environment (staging or production)')
    parser.add_argument('--s3-endpoint', help='S3 endpoint URL')
    parser.add_argument('--s3-region', help='S3 region')
    parser.add_argument('--s3-bucket', help='S3 bucket name')
    parser.add_argument('--s3-access-key', help='S3 access key')
    parser.add_argument('--s3-secret-key', help='S3 secret key')
    parser.add_argument('--temp-dir', help='Temporary directory for backups')
    parser.add_argument('--interval', type=float, help='Seconds between backups (default: one-time run)')
    parser.add_argument('--one-time', action='store_true', help='Run a single backup and exit')
    parser.add_argument('--mongodump', dest='mongodump_bin', help='mongodump executable')
    parser.add_argument('--log-level', help='DEBUG, INFO, WARNING or ERROR')
    parser.add_argument('--log-file', help='Also write logs to this file')
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    # Environment must be populated before the config classes read it
    load_dotenv(args.env_file, override=False)

    from dumper import create_executor
    from dumper.errors import DumperError
    from dumper.backup.cancellation import BackupCancelled, CancellationToken
    from dumper.scheduler import run

    overrides = {
        'MONGO_URI': args.mongo_uri,
        'MONGO_DATABASE': args.database,
        'ENVIRONMENT': args.environment,
        'S3_ENDPOINT': args.s3_endpoint,
        'S3_REGION': args.s3_region,
        'S3_BUCKET': args.s3_bucket,
        'S3_ACCESS_KEY': args.s3_access_key,
        'S3_SECRET_KEY': args.s3_secret_key,
        'TEMP_DIR': args.temp_dir,
        'BACKUP_INTERVAL': 0 if args.one_time else args.interval,
        'MONGODUMP_BIN': args.mongodump_bin,
        'LOG_LEVEL': args.log_level,
        'LOG_FILE': args.log_file,
    }

    logger = logging.getLogger('dumper')

    try:
        executor, settings = create_executor(args.config_name, overrides)
    except DumperError as e:
        logging.basicConfig()
        logger.critical(f"Failed to create MongoDB dumper: {e}")
        return 2

    cancel_token = CancellationToken()

    def _handle_signal(signum, frame):
        name = signal.Signals(signum).name
        logger.info(f"Received {name}, shutting down")
        cancel_token.cancel(name)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        run(executor, settings['BACKUP_INTERVAL'], cancel_token)
    except BackupCancelled as e:
        logger.critical(f"Backup cancelled: {e}")
        return 130
    except DumperError as e:
        logger.critical(f"Backup failed: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
