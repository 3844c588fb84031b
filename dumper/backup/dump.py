"""
MongoDB dump stage.

Runs `mongodump --uri <uri> --out <dir> [--db <name>] --verbose` as a
subprocess. Its stdout is parsed for the collection currently being written
and for percentage markers; its stderr is captured verbatim so it can be
attached to the error when the dump fails. Both streams are consumed by
their own reader thread and both readers are drained before the stage
returns.
"""

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, IO, List, Optional, Tuple

from dumper.errors import DumperError, DumpToolNotFoundError
from dumper.models import BackupJob, ProgressEvent
from dumper.utils.formatting import format_rate, format_size, redact_uri
from .cancellation import BackupCancelled
from .progress import ProgressListener, ProgressTracker


DEFAULT_DUMP_BINARY = 'mongodump'
DATA_FILE_EXTENSION = '.bson'

COLLECTION_PATTERN = re.compile(r'writing ([^ ]+) to')
PERCENT_PATTERN = re.compile(r'(\d+(?:\.\d+)?)%')

logger = logging.getLogger(__name__)


class DumpError(DumperError):
    """Raised when mongodump fails."""
    pass


@dataclass
class DumpStats:
    """Totals of a finished dump, derived from the files on disk."""

    output_dir: str
    size_bytes: int
    collection_count: int
    duration: float


def uri_contains_database(uri: str) -> bool:
    """
    Guess whether a connection string already names a database.

    Heuristic: the URI has a query string and the part before it has more
    than three '/'-separated segments, e.g. mongodb://host/db?authSource=x.
    A URI naming a database without a query string is not detected.
    """
    if '?' not in uri or '/' not in uri:
        return False
    return len(uri.split('?')[0].split('/')) > 3


def collect_dump_stats(output_dir: str) -> Tuple[int, int]:
    """
    Walk a dump directory and total its data files.

    Returns:
        (total size in bytes, number of collections)

    Raises:
        OSError: If the tree cannot be walked
    """
    total_size = 0
    collection_count = 0

    def _raise(error):
        raise error

    for dirpath, _dirnames, filenames in os.walk(output_dir, onerror=_raise):
        for name in filenames:
            if os.path.splitext(name)[1] == DATA_FILE_EXTENSION:
                collection_count += 1
                total_size += os.path.getsize(os.path.join(dirpath, name))

    return total_size, collection_count


class MongoDumper:
    """
    Wraps the mongodump executable.

    The executable is resolved once, here, so a missing tool is reported as
    a configuration error before any run starts.
    """

    def __init__(
        self,
        job: BackupJob,
        dump_binary: str = DEFAULT_DUMP_BINARY,
        poll_interval: float = 0.2,
        terminate_grace: float = 5.0,
    ):
        """
        Initialize the dumper.

        Args:
            job: BackupJob with the connection string and optional database
            dump_binary: Name or path of the mongodump executable
            poll_interval: Seconds between cancellation checks while waiting
            terminate_grace: Seconds to wait after SIGTERM before killing

        Raises:
            DumpToolNotFoundError: If dump_binary cannot be resolved
        """
        self.job = job
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace
        self.process = None

        resolved = shutil.which(dump_binary)
        if resolved is None:
            raise DumpToolNotFoundError(f"{dump_binary} executable not found in PATH")
        self.binary = resolved
        logger.info(f"Found mongodump executable: {self.binary}")

    def should_pass_database(self) -> bool:
        return bool(self.job.database) and not uri_contains_database(self.job.mongo_uri)

    def build_command(self, output_dir: str) -> List[str]:
        command = [self.binary, '--uri', self.job.mongo_uri, '--out', output_dir]
        if self.should_pass_database():
            command += ['--db', self.job.database]
        command.append('--verbose')
        return command

    def describe_command(self, output_dir: str) -> str:
        """Command line for logging, with the connection string redacted."""
        command = self.build_command(output_dir)
        command[2] = redact_uri(self.job.mongo_uri)
        return ' '.join(command)

    def create_dump(
        self,
        output_dir: str,
        cancellation_check: Optional[Callable[[], None]] = None,
        progress_listener: Optional[ProgressListener] = None,
    ) -> DumpStats:
        """
        Dump the database into output_dir.

        Args:
            output_dir: Directory mongodump writes into (created if missing)
            cancellation_check: Called while waiting; raises BackupCancelled to abort
            progress_listener: Optional callback receiving throttled ProgressEvents

        Returns:
            DumpStats computed from the produced files

        Raises:
            DumpError: If mongodump cannot start or exits non-zero
            BackupCancelled: If the run was cancelled; the subprocess is terminated
        """
        logger.info(f"Starting MongoDB dump into {output_dir}")

        try:
            os.makedirs(output_dir, exist_ok=True)
        except OSError as e:
            raise DumpError(f"Failed to create output directory {output_dir}: {e}")

        logger.debug(f"Executing command: {self.describe_command(output_dir)}")

        started = time.monotonic()
        try:
            self.process = subprocess.Popen(
                self.build_command(output_dir),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding='utf-8',
                errors='replace',
            )
        except OSError as e:
            raise DumpError(f"Failed to start mongodump: {e}")

        process = self.process
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []
        tracker = ProgressTracker('dump', listener=self._listener(progress_listener))

        readers = [
            threading.Thread(
                target=self._consume_stdout,
                args=(process.stdout, stdout_lines, tracker),
                name='mongodump-stdout',
                daemon=True,
            ),
            threading.Thread(
                target=self._consume_stderr,
                args=(process.stderr, stderr_lines),
                name='mongodump-stderr',
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        try:
            returncode = self._wait(process, cancellation_check)
        except BackupCancelled:
            logger.warning("Cancellation requested, terminating mongodump")
            self._terminate(process)
            self._join(readers)
            raise
        except BaseException:
            self._terminate(process)
            self._join(readers)
            raise

        self._join(readers)
        duration = time.monotonic() - started
        stderr_text = ''.join(stderr_lines)

        if returncode != 0:
            logger.error(
                f"MongoDB dump failed with exit code {returncode} after {duration:.1f}s\n"
                f"stdout:\n{''.join(stdout_lines)}\nstderr:\n{stderr_text}"
            )
            raise DumpError(f"mongodump failed with exit code {returncode} - stderr: {stderr_text}")

        try:
            size_bytes, collection_count = collect_dump_stats(output_dir)
        except OSError as e:
            logger.warning(f"Failed to calculate dump statistics: {e}")
            size_bytes, collection_count = 0, 0

        logger.info(
            f"MongoDB dump completed successfully: {output_dir} "
            f"({format_size(size_bytes)}, {collection_count} collections, "
            f"{duration:.1f}s, {format_rate(size_bytes, duration)})"
        )

        return DumpStats(
            output_dir=output_dir,
            size_bytes=size_bytes,
            collection_count=collection_count,
            duration=duration,
        )

    def _wait(self, process: subprocess.Popen, cancellation_check: Optional[Callable[[], None]]) -> int:
        while True:
            if cancellation_check:
                cancellation_check()
            try:
                return process.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                continue

    def _terminate(self, process: subprocess.Popen):
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self.terminate_grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"mongodump did not exit within {self.terminate_grace}s, killing it")
            process.kill()
            process.wait()

    def _join(self, readers: List[threading.Thread]):
        for reader in readers:
            reader.join()

    def _consume_stdout(self, stream: IO[str], lines: List[str], tracker: ProgressTracker):
        current_collection = None

        for line in stream:
            lines.append(line)
            text = line.rstrip('\n')

            match = COLLECTION_PATTERN.search(text)
            if match:
                current_collection = match.group(1)
                logger.info(f"Dumping collection: {current_collection}")

            match = PERCENT_PATTERN.search(text)
            if match:
                tracker.update(float(match.group(1)), item=current_collection)

            logger.debug(f"mongodump stdout: {text}")

        stream.close()

    def _consume_stderr(self, stream: IO[str], lines: List[str]):
        for line in stream:
            lines.append(line)
            logger.debug(f"mongodump stderr: {line.rstrip()}")

        stream.close()

    @staticmethod
    def _listener(extra: Optional[ProgressListener]) -> ProgressListener:
        def _log_progress(event: ProgressEvent):
            if event.item:
                logger.info(
                    f"MongoDB dump progress: {event.percent}% "
                    f"(collection: {event.item}, elapsed: {event.elapsed:.1f}s)"
                )
            else:
                logger.info(f"MongoDB dump progress: {event.percent}% (elapsed: {event.elapsed:.1f}s)")
            if extra is not None:
                extra(event)

        return _log_progress
