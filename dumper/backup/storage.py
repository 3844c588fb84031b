"""
Object storage for backup archives.

S3Storage talks to any S3-compatible service (Backblaze B2, MinIO, AWS)
through a custom endpoint with path-style addressing and static
credentials. Uploads are streamed through a ProgressReader so progress can
be logged and the transfer aborted when the run is cancelled.
"""

import io
import logging
import os
import time
from typing import Callable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from dumper.errors import DumperError
from dumper.models import ProgressEvent
from dumper.utils.formatting import format_rate, format_size, format_transfer
from .progress import ProgressListener, ProgressTracker


DOWNLOAD_CHUNK_SIZE = 1024 * 1024

logger = logging.getLogger(__name__)


class StorageError(DumperError):
    """Raised when storage operation fails."""
    pass


class ProgressReader(io.RawIOBase):
    """
    Read-only, seekable file wrapper that reports read progress.

    The transfer client may rewind the body (checksums, retries); seeking
    back to the start resets the byte counter.
    """

    def __init__(
        self,
        fileobj,
        total_size: int,
        tracker: ProgressTracker,
        item: Optional[str] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        super().__init__()
        self._fileobj = fileobj
        self.total_size = total_size
        self.bytes_read = 0
        self.tracker = tracker
        self.item = item
        self.cancellation_check = cancellation_check

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self.cancellation_check:
            self.cancellation_check()

        data = self._fileobj.read(size)
        if data:
            self.bytes_read += len(data)
            self._report()
        return data

    def readinto(self, buffer) -> int:
        data = self.read(len(buffer))
        buffer[:len(data)] = data
        return len(data)

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        position = self._fileobj.seek(offset, whence)
        if position == 0:
            self.bytes_read = 0
            self.tracker.rewind()
        else:
            self.bytes_read = position
        return position

    def tell(self) -> int:
        return self._fileobj.tell()

    def _report(self):
        if self.total_size <= 0:
            return
        percent = self.bytes_read * 100 / self.total_size
        self.tracker.update(
            percent,
            item=self.item,
            bytes_done=self.bytes_read,
            bytes_total=self.total_size,
        )


def _log_upload_progress(event: ProgressEvent):
    logger.info(
        f"Upload progress: {event.percent}% "
        f"({format_transfer(event.bytes_done, event.bytes_total)}) {event.item}"
    )


class S3Storage:
    """
    Handler for backups stored in an S3-compatible bucket.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        bucket_name: str,
        endpoint_url: Optional[str] = None,
        region: str = 'us-east-1'
    ):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            endpoint_url: Custom S3-compatible endpoint (None for AWS)
            region: Signing region (default: us-east-1)

        Raises:
            StorageError: If the client cannot be created
        """
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=BotoConfig(
                    s3={'addressing_style': 'path'},
                    request_checksum_calculation='when_required',
                    response_checksum_validation='when_required',
                )
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def upload_file(
        self,
        local_path: str,
        remote_key: str,
        cancellation_check: Optional[Callable[[], None]] = None,
        progress_listener: Optional[ProgressListener] = None
    ):
        """
        Upload a local file with a single PUT.

        Args:
            local_path: Path to local archive file
            remote_key: Object key to write
            cancellation_check: Called on every read of the body; raises to abort
            progress_listener: Optional callback receiving throttled ProgressEvents

        Raises:
            StorageError: If the file cannot be read or the upload fails
            BackupCancelled: If the run was cancelled during the transfer
        """
        try:
            file_size = os.path.getsize(local_path)
        except OSError as e:
            raise StorageError(f"Local file not found: {local_path} ({e})")

        logger.info(
            f"Uploading {local_path} to s3://{self.bucket_name}/{remote_key} "
            f"({format_size(file_size)})"
        )

        def _on_progress(event: ProgressEvent):
            _log_upload_progress(event)
            if progress_listener is not None:
                progress_listener(event)

        tracker = ProgressTracker('upload', listener=_on_progress)
        started = time.monotonic()

        try:
            with open(local_path, 'rb') as f:
                body = ProgressReader(
                    f,
                    file_size,
                    tracker,
                    item=remote_key,
                    cancellation_check=cancellation_check
                )
                self.s3_client.put_object(
                    Bucket=self.bucket_name,
                    Key=remote_key,
                    Body=body,
                    ContentLength=file_size
                )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload of {remote_key} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload of {remote_key} failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path} for upload: {e}")

        duration = time.monotonic() - started
        bytes_per_sec = f"{file_size / duration:.0f} bytes/sec" if duration > 0 else 'n/a'
        logger.info(
            f"Successfully uploaded to S3: {remote_key} "
            f"({format_size(file_size)} in {duration:.1f}s, "
            f"{format_rate(file_size, duration)}, {bytes_per_sec})"
        )

    def download_file(
        self,
        remote_key: str,
        local_path: str,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Download an object to a local file.

        Raises:
            StorageError: If the download fails
            BackupCancelled: If the run was cancelled during the transfer
        """
        logger.info(f"Downloading s3://{self.bucket_name}/{remote_key} to {local_path}")

        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=remote_key)
            body = response['Body']
            try:
                with open(local_path, 'wb') as f:
                    for chunk in body.iter_chunks(DOWNLOAD_CHUNK_SIZE):
                        if cancellation_check:
                            cancellation_check()
                        f.write(chunk)
            finally:
                body.close()
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download of {remote_key} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 download of {remote_key} failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to write {local_path}: {e}")

        logger.info(f"Successfully downloaded {remote_key} to {local_path}")

    def list_backups(self, prefix: str, page_size: Optional[int] = None) -> List[str]:
        """
        List all object keys under a prefix, following continuation tokens.

        Raises:
            StorageError: If listing fails
        """
        logger.info(f"Listing backups under prefix: {prefix}")

        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')
            pagination_config = {'PageSize': page_size} if page_size else {}

            for page in paginator.paginate(
                Bucket=self.bucket_name,
                Prefix=prefix,
                PaginationConfig=pagination_config
            ):
                for obj in page.get('Contents', []):
                    keys.append(obj['Key'])

            return keys

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def test_connection(self) -> bool:
        """
        Test bucket access.

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")
