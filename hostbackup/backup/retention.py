"""
Count-based retention for backup archives.

The same policy applies to the local backup directory and the remote
store: keep the newest N archives, delete the rest. Only names matching
the archive pattern are ever considered.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .compression import ARCHIVE_PATTERN, format_bytes
from .results import RetentionRecord
from .storage import ListingEntry, StorageError, StorageLocation


logger = logging.getLogger(__name__)


def parse_listing_time(line: str, now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse the modification time from a Unix-style LIST line.

    Recent entries show "Mon DD HH:MM" without a year; they are placed in
    the current year, or the previous one if that would put them more than
    a day in the future. Older entries show "Mon DD YYYY".

    Args:
        line: Raw listing line
        now: Reference time (defaults to datetime.now())

    Returns:
        Parsed datetime, or None if the line has no usable date
    """
    parts = line.split(None, 8)
    if len(parts) < 9:
        return None

    month, day, time_or_year = parts[5], parts[6], parts[7]
    now = now or datetime.now()

    try:
        if ':' in time_or_year:
            parsed = datetime.strptime(f"{month} {day} {now.year} {time_or_year}", '%b %d %Y %H:%M')
            if parsed > now + timedelta(days=1):
                parsed = parsed.replace(year=parsed.year - 1)
            return parsed
        return datetime.strptime(f"{month} {day} {time_or_year}", '%b %d %Y')
    except ValueError:
        return None


class RetentionManager:
    """
    Keeps the newest archives at a storage location and deletes the rest.
    """

    def prune(self, location: StorageLocation, keep: int) -> List[RetentionRecord]:
        """
        Delete archives beyond the newest `keep` at a location.

        Failures to delete an individual archive are logged and skipped.

        Args:
            location: LocalDirectory or a connected RemoteStore
            keep: Number of archives to retain

        Returns:
            Records of the archives that were deleted

        Raises:
            ValueError: If keep is negative
        """
        if keep < 0:
            raise ValueError(f"Retention count cannot be negative: {keep}")

        try:
            entries = location.listing()
        except StorageError as e:
            logger.warning(f"Could not retrieve file list for retention cleanup at {location.description}: {e}")
            return []

        archives = [self._record(location, entry) for entry in entries if ARCHIVE_PATTERN.match(entry.name)]
        if not archives:
            logger.debug(f"No backup archives found at {location.description}")
            return []

        archives.sort(key=lambda record: (record.modified, record.name), reverse=True)

        deleted = []
        for record in archives[keep:]:
            try:
                location.delete(record.name)
            except StorageError as e:
                logger.warning(f"Failed to delete old backup {record.name}: {e}")
                continue

            deleted.append(record)
            logger.info(f"Deleted old backup: {record.name} ({format_bytes(record.size)})")

        logger.info(f"Retention at {location.description}: kept {keep}, deleted {len(deleted)} old backup(s)")
        return deleted

    def _record(self, location: StorageLocation, entry: ListingEntry) -> RetentionRecord:
        modified = self._modified_time(location, entry)

        try:
            size = location.size(entry.name)
        except StorageError:
            size = None

        return RetentionRecord(name=entry.name, size=size or 0, modified=modified)

    def _modified_time(self, location: StorageLocation, entry: ListingEntry) -> datetime:
        try:
            modified = location.modified_time(entry.name)
        except StorageError as e:
            logger.debug(f"Modification time query failed for {entry.name}: {e}")
            modified = None

        if modified is not None:
            return modified

        if entry.line:
            logger.debug(f"Modification time unavailable for {entry.name}, parsing listing line")
            modified = parse_listing_time(entry.line)
            if modified is not None:
                return modified

        # Unknown age sorts oldest, so it is the first to go
        logger.warning(f"Cannot determine age of {entry.name}, treating as oldest")
        return datetime.min
