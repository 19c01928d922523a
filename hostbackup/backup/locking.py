"""
Cross-process lock for backup runs.

A JSON lock record at a fixed path is the only state shared between
concurrent invocations. A record older than the maximum run duration is
considered abandoned and may be reclaimed.
"""

import json
import logging
import os
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Dict, Any


logger = logging.getLogger(__name__)


class LockContention(Exception):
    """Raised when another backup run holds a valid lock."""
    pass


class LockManager:
    """
    Sentinel-file mutual exclusion.

    Callers either get the lock immediately or fail; retrying is left to
    the external scheduler.
    """

    def __init__(self, lock_path: Path, max_age_seconds: int, clock: Callable[[], float] = time.time):
        """
        Initialize lock manager.

        Args:
            lock_path: Well-known lock file location
            max_age_seconds: Age after which an existing lock is stale
            clock: Wall-clock source (seconds since epoch)
        """
        self.lock_path = Path(lock_path)
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def read_record(self) -> Optional[Dict[str, Any]]:
        """
        Read the current lock record.

        Returns:
            Parsed record, or None if absent or malformed
        """
        try:
            data = json.loads(self.lock_path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return None

        if not isinstance(data, dict) or not isinstance(data.get('timestamp'), (int, float)):
            return None
        return data

    def acquire(self) -> bool:
        """
        Try to take the lock.

        Returns:
            True if the lock is now held by this process, False if a valid
            lock belongs to another run
        """
        if self._held:
            return True

        if self.lock_path.exists():
            record = self.read_record()

            if record is None:
                logger.warning(f"Invalid lock file found, removing: {self.lock_path}")
                self._discard()
            else:
                age = self._clock() - record['timestamp']
                if age > self.max_age_seconds:
                    logger.warning(f"Stale lock file detected (age: {int(age)}s), removing")
                    self._discard()
                else:
                    started = record.get('started', 'unknown')
                    logger.error(f"Backup already running (pid: {record.get('pid')}, started: {started})")
                    return False

        record = {
            'pid': os.getpid(),
            'timestamp': int(self._clock()),
            'started': datetime.fromtimestamp(self._clock()).strftime('%Y-%m-%d %H:%M:%S'),
        }

        # The record is complete before the lock path appears, so a concurrent
        # reader never sees an empty lock file
        fd, staging = tempfile.mkstemp(prefix='.backup-lock-', dir=str(self.lock_path.parent))
        try:
            with os.fdopen(fd, 'w') as f:
                json.dump(record, f)
            os.link(staging, str(self.lock_path))
        except FileExistsError:
            logger.error("Lock file was created by another run while acquiring")
            return False
        finally:
            os.unlink(staging)

        self._held = True
        logger.debug(f"Lock file created: {self.lock_path}")
        return True

    def require(self):
        """
        Take the lock or fail.

        Raises:
            LockContention: If another run holds a valid lock
        """
        if not self.acquire():
            raise LockContention(f"Another backup process is running (lock: {self.lock_path})")

    def is_locked(self) -> bool:
        """True if any run currently holds a valid (non-stale) lock."""
        record = self.read_record()
        if record is None:
            return False
        return self._clock() - record['timestamp'] <= self.max_age_seconds

    def release(self):
        """Remove the lock if this manager holds it. Safe to call repeatedly."""
        if not self._held:
            return

        self._held = False
        self._discard()
        logger.debug("Lock file removed")

    def _discard(self):
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
