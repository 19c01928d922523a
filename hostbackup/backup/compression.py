"""
Compression helpers for backup artifacts.

Covers:
- Artifact naming shared by every stage of a run
- Size-driven gzip compression of database dumps, streamed in fixed chunks
"""

import gzip
import logging
import os
import re
import zlib
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)

ARCHIVE_PATTERN = re.compile(r'^backup-\d{4}-\d{2}-\d{2}-\d{2}-\d{2}\.zip$')
DUMP_PATTERN = re.compile(r'^[A-Za-z0-9_-]+_\d{4}-\d{2}-\d{2}-\d{2}-\d{2}\.sql(\.gz)?$')

CHUNK_SIZE = 512 * 1024
GZIP_LEVEL = 9


class CompressionError(Exception):
    """Raised when compression or its verification fails."""
    pass


@dataclass(frozen=True)
class CompressionOutcome:
    path: Path
    uncompressed_size: int
    compressed_size: int
    compressed: bool


def sanitize_name(name: str) -> str:
    """Replace anything outside [A-Za-z0-9_-] so names are safe as filenames."""
    return re.sub(r'[^A-Za-z0-9_-]', '_', name)


def archive_filename(token: str) -> str:
    """
    Generate the archive filename for a run.

    Format: backup-{YYYY-MM-DD-HH-mm}.zip
    """
    return f"backup-{token}.zip"


def dump_filename(database: str, token: str) -> str:
    """
    Generate the uncompressed dump filename for a database.

    Format: {sanitized_db}_{YYYY-MM-DD-HH-mm}.sql
    """
    return f"{sanitize_name(database)}_{token}.sql"


def format_bytes(size: int, precision: int = 2) -> str:
    """Format a byte count as a human-readable string."""
    units = ['B', 'KB', 'MB', 'GB', 'TB']
    value = float(max(size, 0))
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, precision)} {units[index]}"


def compress_if_oversized(
    path: Path,
    threshold_bytes: int,
    chunk_size: int = CHUNK_SIZE,
    level: int = GZIP_LEVEL
) -> CompressionOutcome:
    """
    Gzip a dump if it is larger than the threshold.

    A file exactly at the threshold is left alone. The uncompressed file is
    only removed after the compressed copy has been verified.

    Args:
        path: Uncompressed dump file
        threshold_bytes: Size above which the dump is compressed
        chunk_size: Bytes read and written per step
        level: gzip compression level

    Returns:
        CompressionOutcome describing the artifact that should be kept

    Raises:
        CompressionError: If compression fails; the uncompressed file is kept
    """
    path = Path(path)
    uncompressed_size = path.stat().st_size

    if uncompressed_size <= threshold_bytes:
        return CompressionOutcome(path, uncompressed_size, uncompressed_size, False)

    gz_path = path.with_name(path.name + '.gz')

    try:
        _gzip_file(path, gz_path, chunk_size, level)

        if not gz_path.exists() or gz_path.stat().st_size == 0:
            raise CompressionError("Gzip compression produced empty or missing file")

        verify_gzip(gz_path, uncompressed_size, chunk_size)
    except Exception:
        _remove_quietly(gz_path)
        raise

    compressed_size = gz_path.stat().st_size

    try:
        path.unlink()
    except OSError as e:
        logger.warning(f"Failed to delete uncompressed dump {path}: {e}")

    ratio = round((1 - compressed_size / uncompressed_size) * 100, 1)
    logger.info(f"Compression complete: {format_bytes(compressed_size)} ({ratio}% reduction)")

    return CompressionOutcome(gz_path, uncompressed_size, compressed_size, True)


def _gzip_file(source: Path, destination: Path, chunk_size: int, level: int):
    try:
        with open(source, 'rb') as src, gzip.open(destination, 'wb', compresslevel=level) as dest:
            while True:
                chunk = src.read(chunk_size)
                if not chunk:
                    break

                written = dest.write(chunk)
                if not written or written != len(chunk):
                    raise CompressionError("Failed to write gzip data (possible disk full)")
    except CompressionError:
        raise
    except OSError as e:
        raise CompressionError(f"Failed to compress {source.name}: {e}")


def verify_gzip(path: Path, expected_size: int, chunk_size: int = CHUNK_SIZE):
    """
    Decompress a gzip file end to end and check its length.

    Raises:
        CompressionError: If the stream is corrupt or the length differs
    """
    total = 0
    try:
        with gzip.open(path, 'rb') as f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                total += len(chunk)
    except (OSError, EOFError, zlib.error) as e:
        raise CompressionError(f"Compressed dump failed verification: {e}")

    if total != expected_size:
        raise CompressionError(
            f"Compressed dump decompresses to {total} bytes, expected {expected_size}"
        )


def _remove_quietly(path: Path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path}: {e}")
