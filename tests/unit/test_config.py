"""
Unit tests for configuration loading and the executor factory.
"""

import pytest

from dumper import create_executor
from dumper.config import DevelopmentConfig, load_settings
from dumper.errors import ConfigurationError, DumpToolNotFoundError
from dumper.backup.executor import BackupExecutor


@pytest.fixture
def overrides(tmp_path, fake_mongodump):
    return {
        'MONGO_URI': 'mongodb://localhost:27017',
        'MONGO_DATABASE': 'orders',
        'ENVIRONMENT': 'staging',
        'S3_ENDPOINT': 'https://s3.eu-central-003.backblazeb2.com',
        'S3_REGION': 'eu-central-003',
        'S3_BUCKET': 'backups',
        'S3_ACCESS_KEY': 'access-key-id',
        'S3_SECRET_KEY': 'secret',
        'TEMP_DIR': str(tmp_path / 'dumps'),
        'MONGODUMP_BIN': fake_mongodump(),
        'BACKUP_INTERVAL': 0,
    }


class TestLoadSettings:
    """Test load_settings."""

    def test_overrides_replace_defaults(self):
        settings = load_settings('production', {'MONGO_URI': 'mongodb://db', 'S3_BUCKET': None})

        assert settings['MONGO_URI'] == 'mongodb://db'
        assert 'S3_BUCKET' in settings
        assert settings['S3_REGION']

    def test_development_config(self):
        settings = load_settings('development')

        assert settings['DEBUG'] is True
        assert settings['LOG_LEVEL'] == DevelopmentConfig.LOG_LEVEL

    def test_unknown_config(self):
        with pytest.raises(ConfigurationError, match="Unknown configuration 'nonexistent'"):
            load_settings('nonexistent')

    def test_unknown_config_from_environment(self, monkeypatch):
        monkeypatch.setenv('DUMPER_ENV', 'qa')

        with pytest.raises(ConfigurationError, match="Unknown configuration 'qa'"):
            load_settings()

    def test_interval_parsed(self):
        settings = load_settings('production', {'BACKUP_INTERVAL': '3600'})

        assert settings['BACKUP_INTERVAL'] == 3600.0

    def test_malformed_interval(self):
        with pytest.raises(ConfigurationError, match="number of seconds"):
            load_settings('production', {'BACKUP_INTERVAL': 'hourly'})


class TestCreateExecutor:
    """Test create_executor factory."""

    def test_builds_executor(self, overrides, tmp_path):
        executor, settings = create_executor('production', overrides)

        assert isinstance(executor, BackupExecutor)
        assert executor.job.database == 'orders'
        assert executor.job.environment == 'staging'
        assert executor.storage.bucket_name == 'backups'
        assert executor.storage.endpoint_url == 'https://s3.eu-central-003.backblazeb2.com'
        assert settings['BACKUP_INTERVAL'] == 0
        assert (tmp_path / 'dumps').is_dir()

    def test_missing_uri(self, overrides):
        overrides['MONGO_URI'] = ''

        with pytest.raises(ConfigurationError, match="MongoDB URI is required"):
            create_executor('production', overrides)

    def test_missing_s3_setting(self, overrides):
        overrides['S3_SECRET_KEY'] = ''

        with pytest.raises(ConfigurationError, match="S3 configuration is incomplete"):
            create_executor('production', overrides)

    def test_missing_mongodump(self, overrides):
        overrides['MONGODUMP_BIN'] = 'mongodump-does-not-exist-xyz'

        with pytest.raises(DumpToolNotFoundError):
            create_executor('production', overrides)

    @pytest.mark.parametrize("interval", [-1, 0.5])
    def test_invalid_interval(self, overrides, interval):
        overrides['BACKUP_INTERVAL'] = interval

        with pytest.raises(ConfigurationError, match="Backup interval"):
            create_executor('production', overrides)

    def test_periodic_interval(self, overrides):
        overrides['BACKUP_INTERVAL'] = '3600'

        _, settings = create_executor('production', overrides)

        assert settings['BACKUP_INTERVAL'] == 3600.0

    def test_nonstandard_environment_allowed(self, overrides):
        overrides['ENVIRONMENT'] = 'qa'

        executor, _ = create_executor('production', overrides)

        assert executor.job.environment == 'qa'

    def test_log_file(self, overrides, tmp_path):
        log_file = tmp_path / 'logs' / 'dumper.log'
        overrides['LOG_FILE'] = str(log_file)

        create_executor('production', overrides)

        assert log_file.exists()
