"""
Stage result types.

Each stage returns either a success or a failure variant, so a "successful"
result without an artifact path cannot be constructed.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Union


class RunOutcome(str, Enum):
    """Terminal state of a backup run."""
    SUCCESS = 'success'
    DEGRADED = 'completed_with_warnings'
    FAILED = 'failed'
    LOCKED = 'locked'
    FATAL = 'fatal'

    @property
    def exit_code(self) -> int:
        return 0 if self in (RunOutcome.SUCCESS, RunOutcome.DEGRADED) else 1


@dataclass(frozen=True)
class ExportSuccess:
    database: str
    path: Path
    uncompressed_size: int
    compressed_size: int
    compressed: bool
    success = True


@dataclass(frozen=True)
class ExportFailure:
    database: str
    error: str
    success = False


DatabaseExportResult = Union[ExportSuccess, ExportFailure]


@dataclass(frozen=True)
class ArchiveSuccess:
    path: Path
    size: int
    file_count: int
    excluded_count: int
    skipped_count: int = 0
    success = True


@dataclass(frozen=True)
class ArchiveFailure:
    error: str
    success = False


ArchiveResult = Union[ArchiveSuccess, ArchiveFailure]


@dataclass(frozen=True)
class RetentionRecord:
    """An artifact found at a storage location during pruning."""
    name: str
    size: int
    modified: datetime


@dataclass(frozen=True)
class TransferSuccess:
    remote_path: str
    uploaded_size: int
    attempts: int
    deleted: List[RetentionRecord] = field(default_factory=list)
    success = True


@dataclass(frozen=True)
class TransferFailure:
    error: str
    attempts: int
    success = False


TransferResult = Union[TransferSuccess, TransferFailure]
