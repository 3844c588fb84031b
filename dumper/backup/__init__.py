"""
Backup module for the dumper.

This module handles the backup pipeline:
- Dump (mongodump subprocess with progress parsing)
- Compression (zip archive of the dump directory)
- Storage (S3-compatible upload, download and listing)
- Execution orchestration and cleanup
"""

from .cancellation import BackupCancelled, CancellationToken
from .compression import create_archive, CompressionError
from .dump import MongoDumper, DumpError
from .executor import BackupExecutor, cleanup_paths, execute_backup
from .storage import S3Storage, StorageError

__all__ = [
    'BackupCancelled',
    'CancellationToken',
    'create_archive',
    'CompressionError',
    'MongoDumper',
    'DumpError',
    'BackupExecutor',
    'cleanup_paths',
    'execute_backup',
    'S3Storage',
    'StorageError'
]
