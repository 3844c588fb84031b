"""
Archive stage: packs a dump directory into a single zip file.

Every regular file under the source directory becomes one deflated entry
named by its path relative to that directory. File contents are streamed
through a fixed-size buffer since dump files can be arbitrarily large.
"""

import os
import zipfile
from typing import Callable, List, Optional

from dumper.errors import DumperError


COPY_BUFFER_SIZE = 32 * 1024


class CompressionError(DumperError):
    """Raised when archive creation fails."""
    pass


def create_archive(
    source_dir: str,
    target_path: str,
    cancellation_check: Optional[Callable[[], None]] = None
) -> str:
    """
    Create a zip archive from a directory tree.

    Args:
        source_dir: Directory to archive
        target_path: Path of the zip file to create
        cancellation_check: Optional function called between chunks; raises to abort

    Returns:
        target_path

    Raises:
        CompressionError: If the tree cannot be walked or a file cannot be
            read or written. A partially written archive is left in place.
    """
    if not os.path.isdir(source_dir):
        raise CompressionError(f"Source directory does not exist: {source_dir}")

    try:
        with zipfile.ZipFile(target_path, 'w', zipfile.ZIP_DEFLATED) as zipf:
            for file_path in _walk_files(source_dir):
                _add_file(zipf, source_dir, file_path, cancellation_check)
    except CompressionError:
        raise
    except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise CompressionError(f"Failed to create archive {target_path}: {e}")

    return target_path


def _walk_files(source_dir: str) -> List[str]:
    """Return all regular files below source_dir in a stable order."""
    def _raise(error):
        raise CompressionError(f"Failed to walk directory {source_dir}: {error}")

    files = []
    for dirpath, dirnames, filenames in os.walk(source_dir, onerror=_raise):
        dirnames.sort()
        for name in sorted(filenames):
            path = os.path.join(dirpath, name)
            if os.path.isfile(path):
                files.append(path)
    return files


def _add_file(
    zipf: zipfile.ZipFile,
    source_dir: str,
    file_path: str,
    cancellation_check: Optional[Callable[[], None]]
):
    arcname = os.path.relpath(file_path, source_dir).replace(os.sep, '/')

    try:
        info = zipfile.ZipInfo.from_file(file_path, arcname, strict_timestamps=False)
        info.compress_type = zipfile.ZIP_DEFLATED

        with open(file_path, 'rb') as src, zipf.open(info, 'w') as dst:
            while True:
                if cancellation_check:
                    cancellation_check()
                chunk = src.read(COPY_BUFFER_SIZE)
                if not chunk:
                    break
                dst.write(chunk)
    except OSError as e:
        raise CompressionError(f"Failed to write {file_path} to archive: {e}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}")
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}")


def compression_ratio(original_size: int, compressed_size: int) -> Optional[float]:
    """Return original/compressed, or None when the archive is empty."""
    if compressed_size <= 0:
        return None
    return original_size / compressed_size
