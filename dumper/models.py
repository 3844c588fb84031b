"""
Data model for backup runs.

- BackupJob: immutable parameters for every run of the process
- BackupArtifact: names and paths derived for one run
- ProgressEvent: transient progress report of a stage
- RunResult: aggregate outcome of one pipeline execution
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError


DEFAULT_ENVIRONMENT = 'default'
DEFAULT_DATABASE = 'all-databases'

TIMESTAMP_FORMAT = '%Y-%m-%dT%H-%M-%SZ'
DATE_FORMAT = '%Y-%m-%d'
ARCHIVE_EXTENSION = '.zip'

_TIMESTAMP_RE = re.compile(r'\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}Z$')


@dataclass(frozen=True)
class BackupJob:
    """Parameters shared by every backup run of this process."""

    mongo_uri: str
    s3_endpoint: str
    s3_bucket: str
    s3_access_key: str
    s3_secret_key: str
    s3_region: str = 'us-east-1'
    database: Optional[str] = None
    environment: Optional[str] = None
    temp_dir: str = ''

    @classmethod
    def from_settings(cls, settings: Mapping[str, Any]) -> 'BackupJob':
        """
        Build and validate a job from resolved settings.

        Args:
            settings: Mapping with the keys defined in dumper.config.Config

        Returns:
            Validated BackupJob

        Raises:
            ConfigurationError: If required settings are missing
        """
        job = cls(
            mongo_uri=settings.get('MONGO_URI') or '',
            database=settings.get('MONGO_DATABASE') or None,
            environment=settings.get('ENVIRONMENT') or None,
            s3_endpoint=settings.get('S3_ENDPOINT') or '',
            s3_region=settings.get('S3_REGION') or 'us-east-1',
            s3_bucket=settings.get('S3_BUCKET') or '',
            s3_access_key=settings.get('S3_ACCESS_KEY') or '',
            s3_secret_key=settings.get('S3_SECRET_KEY') or '',
            temp_dir=settings.get('TEMP_DIR') or '',
        )
        job.validate()
        return job

    def validate(self):
        """Raise ConfigurationError if the job cannot run."""
        if not self.mongo_uri:
            raise ConfigurationError("MongoDB URI is required")

        if not (self.s3_endpoint and self.s3_bucket and self.s3_access_key and self.s3_secret_key):
            raise ConfigurationError("S3 configuration is incomplete")

        if not self.temp_dir:
            raise ConfigurationError("Temporary directory is required")

    def get_environment(self, default: str = DEFAULT_ENVIRONMENT) -> str:
        return self.environment or default

    def get_database(self, default: str = DEFAULT_DATABASE) -> str:
        return self.database or default


@dataclass(frozen=True)
class BackupArtifact:
    """
    Local and remote names of one backup run.

    Remote key format: {environment}/{YYYY-MM-DD}/{database}-{environment}-{timestamp}.zip
    """

    environment: str
    database: str
    created_at: datetime
    base_name: str
    dump_path: str
    archive_path: str
    remote_key: str

    @classmethod
    def generate(cls, job: BackupJob, now: Optional[datetime] = None) -> 'BackupArtifact':
        """
        Generate artifact names for a run starting at `now` (UTC).

        Args:
            job: BackupJob the run belongs to
            now: Start time of the run, defaults to the current time

        Returns:
            BackupArtifact
        """
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        else:
            now = now.astimezone(timezone.utc)
        now = now.replace(microsecond=0)

        environment = job.get_environment()
        database = job.get_database()
        base_name = f"{database}-{environment}-{now.strftime(TIMESTAMP_FORMAT)}"
        dump_path = os.path.join(job.temp_dir, base_name)

        return cls(
            environment=environment,
            database=database,
            created_at=now,
            base_name=base_name,
            dump_path=dump_path,
            archive_path=dump_path + ARCHIVE_EXTENSION,
            remote_key=build_remote_key(environment, database, now),
        )


def build_remote_key(environment: str, database: str, timestamp: datetime) -> str:
    """Return the object key for a backup of `database` taken at `timestamp` (UTC)."""
    base_name = f"{database}-{environment}-{timestamp.strftime(TIMESTAMP_FORMAT)}"
    return f"{environment}/{timestamp.strftime(DATE_FORMAT)}/{base_name}{ARCHIVE_EXTENSION}"


def parse_remote_key(remote_key: str) -> Tuple[str, str, datetime]:
    """
    Split a remote key back into (environment, database, timestamp).

    The environment is taken from the first path segment, which makes the
    split of the file name unambiguous even when the database or the
    environment contain dashes.

    Raises:
        ValueError: If the key was not produced by build_remote_key
    """
    parts = remote_key.split('/')
    if len(parts) != 3 or not parts[2].endswith(ARCHIVE_EXTENSION):
        raise ValueError(f"Not a backup key: {remote_key}")

    environment, date_part, filename = parts
    stem = filename[:-len(ARCHIVE_EXTENSION)]

    match = _TIMESTAMP_RE.search(stem)
    if not match:
        raise ValueError(f"Backup key has no timestamp: {remote_key}")

    timestamp = datetime.strptime(match.group(0), TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    prefix = stem[:match.start()]

    env_suffix = f"-{environment}-"
    if not prefix.endswith(env_suffix) or len(prefix) == len(env_suffix):
        raise ValueError(f"Backup key does not match its environment: {remote_key}")
    database = prefix[:-len(env_suffix)]

    if date_part != timestamp.strftime(DATE_FORMAT):
        raise ValueError(f"Backup key date does not match its timestamp: {remote_key}")

    return environment, database, timestamp


@dataclass(frozen=True)
class ProgressEvent:
    """Throttled progress report of a stage. Only ever logged."""

    stage: str
    percent: int
    elapsed: float
    item: Optional[str] = None
    bytes_done: Optional[int] = None
    bytes_total: Optional[int] = None


@dataclass
class RunResult:
    """Outcome of one pipeline execution."""

    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    remote_key: Optional[str] = None
    stage_durations: Dict[str, float] = field(default_factory=dict)
    original_size_bytes: int = 0
    compressed_size_bytes: int = 0
    compression_ratio: Optional[float] = None
    collection_count: int = 0
    error: Optional[BaseException] = None
    error_message: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    @property
    def total_duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def raise_for_status(self):
        """Re-raise the error that ended the run, if any."""
        if self.error is not None:
            raise self.error
