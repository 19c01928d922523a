"""
Archive builder - bundles database dumps and the source tree into one ZIP.

Layout inside the archive:
- databases/{dump file}
- files/{path relative to the source root}
- manifest.txt
"""

import logging
import shutil
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from hostbackup.context import Deadline, RunContext
from .compression import archive_filename, format_bytes
from .results import ArchiveFailure, ArchiveResult, ArchiveSuccess, DatabaseExportResult, ExportSuccess
from .sources import ExclusionMatcher, estimate_tree_size, walk_tree


logger = logging.getLogger(__name__)

# Share of free space the source estimate may use before anything is written
PREFLIGHT_RATIO = 0.8
# Share of free space the embedded data may reach while writing
RUNNING_RATIO = 0.9
PROGRESS_INTERVAL = 100

_SKIPPABLE = (FileNotFoundError, PermissionError, IsADirectoryError, NotADirectoryError)


class ArchiveError(Exception):
    """Raised when the archive cannot be completed or verified."""
    pass


def disk_free_space(path: Path) -> Optional[int]:
    """Free bytes on the volume holding path, or None if unknown."""
    try:
        return shutil.disk_usage(path).free
    except OSError as e:
        logger.warning(f"Cannot determine available disk space: {e}")
        return None


class ArchiveBuilder:
    """
    Builds and verifies the run archive.
    """

    def __init__(self, ctx: RunContext, token: str, deadline: Optional[Deadline] = None,
                 free_space: Callable[[Path], Optional[int]] = disk_free_space):
        """
        Initialize archive builder.

        Args:
            ctx: Run context (paths, compression level, exclusions)
            token: Run timestamp token used in the archive name
            deadline: Soft deadline checked while walking the source tree
            free_space: Returns free bytes for a directory (None if unknown)
        """
        self.ctx = ctx
        self.token = token
        self.deadline = deadline
        self.free_space = free_space
        self.matcher = ExclusionMatcher(ctx.exclude_patterns)

    @property
    def archive_path(self) -> Path:
        return self.ctx.local_backup_dir / archive_filename(self.token)

    def build(self, export_results: Sequence[DatabaseExportResult]) -> ArchiveResult:
        """
        Create the archive from successful exports and the source tree.

        Args:
            export_results: One result per discovered database

        Returns:
            ArchiveSuccess, or ArchiveFailure with no archive left on disk
        """
        archive_path = self.archive_path
        dumps = [result for result in export_results if isinstance(result, ExportSuccess)]
        created = False

        try:
            available = self.free_space(self.ctx.local_backup_dir)
            if available is not None:
                logger.info(f"Available disk space: {format_bytes(available)}")
            self._preflight(dumps, available)

            logger.info(f"Creating backup archive: {archive_path}")
            try:
                zf = zipfile.ZipFile(
                    archive_path, 'x', zipfile.ZIP_DEFLATED, compresslevel=self.ctx.compression_level
                )
            except FileExistsError:
                raise ArchiveError(f"Archive already exists: {archive_path}")
            created = True

            with zf:
                total = self._add_databases(zf, dumps, available)
                file_count, excluded_count, skipped_count = self._add_source_tree(zf, total, available)
                zf.writestr('manifest.txt', self._manifest(dumps, file_count, excluded_count, skipped_count))

            size = archive_path.stat().st_size
            logger.info(f"Archive created: {format_bytes(size)} ({file_count} files)")

            self._verify(archive_path, len(dumps) + file_count + 1)

        except Exception as e:
            logger.error(f"Archive creation failed: {e}")
            if created:
                try:
                    archive_path.unlink()
                except FileNotFoundError:
                    pass
                except OSError as remove_error:
                    logger.error(f"Failed to remove incomplete archive {archive_path}: {remove_error}")
            return ArchiveFailure(error=str(e))

        return ArchiveSuccess(
            path=archive_path,
            size=size,
            file_count=file_count,
            excluded_count=excluded_count,
            skipped_count=skipped_count,
        )

    def _source_root(self) -> Optional[Path]:
        source = self.ctx.source_dir
        if source is None:
            return None
        if not source.is_dir():
            logger.warning(f"Backup source directory not found, archiving databases only: {source}")
            return None
        return source

    def _preflight(self, dumps: List[ExportSuccess], available: Optional[int]):
        estimate = sum(dump.path.stat().st_size for dump in dumps if dump.path.exists())

        source = self._source_root()
        if source is not None:
            logger.info("Pre-calculating source directory size...")
            estimate += estimate_tree_size(source)

        logger.info(f"Estimated archive input size: {format_bytes(estimate)}")

        if available is not None and estimate > available * PREFLIGHT_RATIO:
            raise ArchiveError(
                f"Insufficient disk space for backup. Source: {format_bytes(estimate)}, "
                f"Available: {format_bytes(available)} (need 20% margin)"
            )

    def _add_databases(self, zf: zipfile.ZipFile, dumps: List[ExportSuccess], available: Optional[int]) -> int:
        total = 0
        for dump in dumps:
            try:
                size = dump.path.stat().st_size
                self._check_space(total + size, available)
                zf.write(dump.path, f"databases/{dump.path.name}")
            except OSError as e:
                raise ArchiveError(f"Critical: database backup {dump.database} could not be added to archive: {e}")
            total += size
            logger.debug(f"Added database backup to archive: {dump.path.name}")
        return total

    def _add_source_tree(self, zf: zipfile.ZipFile, total: int, available: Optional[int]):
        file_count = 0
        excluded_count = 0
        skipped_count = 0

        source = self._source_root()
        if source is None:
            return file_count, excluded_count, skipped_count

        logger.info(f"Scanning directory: {source}")
        own_dirs = [self.ctx.local_backup_dir.resolve(), self.ctx.temp_dir.resolve()]

        for entry in walk_tree(source):
            if not entry.ok:
                logger.warning(f"Skipping inaccessible path {entry.relative}: {entry.error}")
                skipped_count += 1
                continue

            if any(_is_within(entry.path, directory) for directory in own_dirs):
                continue

            if self.matcher.matches(str(entry.path), entry.relative):
                logger.debug(f"Excluded: {entry.relative}")
                excluded_count += 1
                continue

            self._check_space(total + entry.size, available)

            try:
                zf.write(entry.path, f"files/{entry.relative}")
            except _SKIPPABLE as e:
                logger.warning(f"Skipping unreadable file {entry.relative}: {e}")
                skipped_count += 1
                continue

            file_count += 1
            total += entry.size

            if file_count % PROGRESS_INTERVAL == 0:
                logger.info(f"Archived {file_count} files...")
                if self.deadline is not None:
                    self.deadline.check('Archive creation')

        return file_count, excluded_count, skipped_count

    def _check_space(self, projected: int, available: Optional[int]):
        if available is not None and projected > available * RUNNING_RATIO:
            raise ArchiveError(
                f"Insufficient disk space to complete backup. Total size: {format_bytes(projected)}, "
                f"Available: {format_bytes(available)}"
            )

    def _manifest(self, dumps: List[ExportSuccess], file_count: int, excluded_count: int,
                  skipped_count: int) -> str:
        lines = [
            "BACKUP MANIFEST",
            "=" * 50,
            "",
            f"Backup Date: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            f"Timestamp: {self.token}",
            "",
            "DATABASES:",
            "-" * 50,
        ]
        for dump in dumps:
            lines.append(f"- {dump.database} ({format_bytes(dump.compressed_size)})")
        lines.append("")
        lines.append(f"Files: {file_count} | Excluded: {excluded_count}")
        if skipped_count:
            lines.append(f"Skipped (unreadable): {skipped_count}")
        return "\n".join(lines) + "\n"

    def _verify(self, archive_path: Path, expected_entries: int):
        if archive_path.stat().st_size == 0:
            raise ArchiveError("ZIP integrity check failed: archive is empty")

        try:
            with zipfile.ZipFile(archive_path, 'r') as zf:
                bad_member = zf.testzip()
                entry_count = len(zf.infolist())
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveError(f"ZIP integrity check failed: {e}")

        if bad_member is not None:
            raise ArchiveError(f"ZIP integrity check failed: corrupt member {bad_member}")
        if entry_count != expected_entries:
            raise ArchiveError(
                f"ZIP integrity check failed: {entry_count} entries, expected {expected_entries}"
            )


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.resolve().relative_to(directory)
        return True
    except ValueError:
        return False
