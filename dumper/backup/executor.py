"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Generate artifact names (local paths, remote key)
2. Dump the database with mongodump
3. Compress the dump directory into a zip archive
4. Upload the archive to S3
5. Cleanup local files (always, best effort)
6. Record the RunResult (status: success/failed/cancelled)
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from dumper.errors import DumperError, StageError
from dumper.models import BackupArtifact, BackupJob, RunResult
from dumper.utils.formatting import format_size
from .cancellation import BackupCancelled, CancellationToken
from .compression import create_archive, get_archive_size, compression_ratio
from .dump import DEFAULT_DUMP_BINARY, MongoDumper
from .storage import S3Storage


STAGES = ('dump', 'archive', 'upload', 'cleanup')

logger = logging.getLogger(__name__)


def cleanup_paths(*paths: str) -> List[str]:
    """
    Remove local files and directories, ignoring paths that don't exist.

    Failures are logged as warnings and never raised.

    Returns:
        Paths that could not be removed
    """
    failed = []

    for path in paths:
        if not path or not os.path.lexists(path):
            continue
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove {path}: {e}")
            failed.append(path)

    return failed


class BackupExecutor:
    """
    Runs the backup pipeline for a job.

    Collaborators are created here so configuration problems (missing
    mongodump, unusable S3 settings) surface before the first run.
    """

    def __init__(
        self,
        job: BackupJob,
        dump_binary: str = DEFAULT_DUMP_BINARY,
        dumper: Optional[MongoDumper] = None,
        storage: Optional[S3Storage] = None
    ):
        """
        Initialize backup executor.

        Args:
            job: BackupJob to execute
            dump_binary: Name or path of the mongodump executable
            dumper: Pre-built MongoDumper (created from job if omitted)
            storage: Pre-built S3Storage (created from job if omitted)

        Raises:
            ConfigurationError: If mongodump is missing or temp_dir cannot be created
            StorageError: If the S3 client cannot be created
        """
        self.job = job
        self.dumper = dumper or MongoDumper(job, dump_binary=dump_binary)
        self.storage = storage or S3Storage(
            access_key=job.s3_access_key,
            secret_key=job.s3_secret_key,
            bucket_name=job.s3_bucket,
            endpoint_url=job.s3_endpoint,
            region=job.s3_region
        )

        os.makedirs(job.temp_dir, exist_ok=True)

        self.result = None
        self.artifact = None
        self._last_remote_key = None
        self._run_lock = threading.Lock()

    def execute(self, cancel_token: Optional[CancellationToken] = None) -> RunResult:
        """
        Execute one backup run.

        Errors never propagate from here; they are recorded on the result.
        Use RunResult.raise_for_status() to surface them.

        Args:
            cancel_token: Token observed by every stage

        Returns:
            RunResult of the run

        Raises:
            RuntimeError: If another run is already in progress on this executor
        """
        if not self._run_lock.acquire(blocking=False):
            raise RuntimeError("A backup run is already in progress on this executor")

        try:
            return self._execute(cancel_token or CancellationToken())
        finally:
            self._run_lock.release()

    def _execute(self, cancel_token: CancellationToken) -> RunResult:
        self.result = RunResult(status='running', started_at=datetime.now(timezone.utc))
        self.artifact = None

        self._log("Starting backup process")

        try:
            self._execute_workflow(cancel_token.check)
            self.result.status = 'success'

        except BackupCancelled as e:
            self.result.status = 'cancelled'
            self.result.error = e
            self.result.error_message = str(e)
            self._log(f"Backup cancelled: {e}", logging.WARNING)

        except Exception as e:
            self.result.status = 'failed'
            self.result.error = e
            self.result.error_message = str(e)
            self._log(f"Backup failed: {e}", logging.ERROR)

        finally:
            if self.artifact is not None:
                self._cleanup()
            self.result.completed_at = datetime.now(timezone.utc)

        self._log_summary()
        return self.result

    def _execute_workflow(self, cancellation_check: Callable[[], None]):
        """Run dump, archive and upload. Cleanup is handled by the caller."""
        cancellation_check()

        artifact = BackupArtifact.generate(self.job)
        if artifact.remote_key == self._last_remote_key:
            raise DumperError(
                f"Remote key {artifact.remote_key} was already used by the previous run; "
                "runs must start at least one second apart"
            )
        self._last_remote_key = artifact.remote_key
        self.artifact = artifact
        self.result.remote_key = artifact.remote_key

        self._log(f"Backup details: local path {artifact.dump_path}, remote key {artifact.remote_key}")

        # Step 1: Dump
        self._log("STEP 1/4: Starting MongoDB dump")
        with self._stage('dump'):
            try:
                stats = self.dumper.create_dump(artifact.dump_path, cancellation_check=cancellation_check)
            except BackupCancelled:
                raise
            except Exception as e:
                raise StageError('dump', f"failed to create MongoDB dump: {e}") from e
        self.result.original_size_bytes = stats.size_bytes
        self.result.collection_count = stats.collection_count
        self._log(
            f"STEP 1/4: MongoDB dump completed ({format_size(stats.size_bytes)}, "
            f"{stats.collection_count} collections, {self.result.stage_durations['dump']:.1f}s)"
        )

        # Step 2: Archive
        self._log("STEP 2/4: Compressing backup directory")
        with self._stage('archive'):
            try:
                create_archive(artifact.dump_path, artifact.archive_path, cancellation_check=cancellation_check)
                compressed_size = get_archive_size(artifact.archive_path)
            except BackupCancelled:
                raise
            except Exception as e:
                raise StageError('archive', f"failed to compress dump directory {artifact.dump_path}: {e}") from e
        self.result.compressed_size_bytes = compressed_size
        self.result.compression_ratio = compression_ratio(stats.size_bytes, compressed_size)

        message = (
            f"STEP 2/4: Compression completed ({format_size(compressed_size)}, "
            f"{self.result.stage_durations['archive']:.1f}s"
        )
        if self.result.compression_ratio is not None:
            message += f", ratio {self.result.compression_ratio:.2f}"
        self._log(message + ")")

        # Step 3: Upload
        self._log(f"STEP 3/4: Starting S3 upload to {artifact.remote_key}")
        with self._stage('upload'):
            try:
                self.storage.upload_file(
                    artifact.archive_path,
                    artifact.remote_key,
                    cancellation_check=cancellation_check
                )
            except BackupCancelled:
                raise
            except Exception as e:
                raise StageError('upload', f"failed to upload dump to S3 as {artifact.remote_key}: {e}") from e
        self._log(f"STEP 3/4: S3 upload completed ({self.result.stage_durations['upload']:.1f}s)")

    def _cleanup(self):
        """Remove the dump directory and the archive. Never changes the run status."""
        self._log("STEP 4/4: Cleaning up temporary files")
        with self._stage('cleanup'):
            failed = cleanup_paths(self.artifact.dump_path, self.artifact.archive_path)

        for path in failed:
            self._log(f"Warning: Failed to remove {path}", logging.WARNING)
        self._log(f"STEP 4/4: Cleanup completed ({self.result.stage_durations['cleanup']:.1f}s)")

    def _stage(self, name: str):
        return _StageTimer(self.result.stage_durations, name)

    def _log_summary(self):
        result = self.result
        durations = ', '.join(
            f"{stage} {result.stage_durations[stage]:.3f}s"
            for stage in STAGES if stage in result.stage_durations
        )
        ratio = f"{result.compression_ratio:.2f}" if result.compression_ratio is not None else 'n/a'
        summary = (
            f"Backup {result.status}: key={result.remote_key}, "
            f"collections={result.collection_count}, "
            f"original={format_size(result.original_size_bytes)}, "
            f"compressed={format_size(result.compressed_size_bytes)}, "
            f"ratio={ratio}, total={result.total_duration:.3f}s ({durations})"
        )
        level = logging.INFO if result.succeeded else logging.ERROR
        if result.status == 'cancelled':
            level = logging.WARNING
        self._log(summary, level)

    def list_backups(self) -> List[str]:
        """List remote keys of this job's environment."""
        return self.storage.list_backups(self.job.get_environment() + '/')

    def restore_backup(
        self,
        remote_key: str,
        destination_dir: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> str:
        """
        Download a backup archive for hand-off to a restore tool.

        Args:
            remote_key: Key of the archive to fetch
            destination_dir: Directory for the download (default: a new temp dir under temp_dir)
            cancel_token: Token observed during the download

        Returns:
            Local path of the downloaded archive

        Raises:
            StageError: If the download fails (stage 'restore'); the partial
                file and an auto-created directory are removed
            BackupCancelled: If cancel_token was cancelled during the download
        """
        created_dir = None
        if destination_dir is None:
            destination_dir = created_dir = tempfile.mkdtemp(prefix='restore_', dir=self.job.temp_dir)
        else:
            os.makedirs(destination_dir, exist_ok=True)

        local_path = os.path.join(destination_dir, os.path.basename(remote_key))
        check = cancel_token.check if cancel_token else None

        logger.info(f"Starting backup restoration: {remote_key}")
        try:
            self.storage.download_file(remote_key, local_path, cancellation_check=check)
        except BackupCancelled:
            cleanup_paths(local_path, created_dir)
            raise
        except Exception as e:
            cleanup_paths(local_path, created_dir)
            raise StageError('restore', f"failed to download backup {remote_key}: {e}") from e
        return local_path

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run result and the logger.

        Args:
            message: Log message
            level: logging level
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        if self.result is not None:
            self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


class _StageTimer:
    """Context manager recording a stage's wall time, also on failure."""

    def __init__(self, durations: Dict[str, float], name: str):
        self.durations = durations
        self.name = name
        self.started = None

    def __enter__(self):
        self.started = time.monotonic()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.durations[self.name] = time.monotonic() - self.started
        return False


def execute_backup(executor: BackupExecutor, cancel_token: Optional[CancellationToken] = None) -> RunResult:
    """
    Execute a backup run and raise if it did not succeed.

    Raises:
        DumperError: The stage error that ended the run
        BackupCancelled: If the run was cancelled
    """
    result = executor.execute(cancel_token)
    result.raise_for_status()
    return result
