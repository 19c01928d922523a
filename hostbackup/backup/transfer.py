"""
Off-host transfer of the run archive.

Small archives go up in one blocking put. Large ones go through a
resumable put in a worker thread with its own time limit, so a stalled
upload is cancelled well before the host kills the whole run.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, List, Optional

from hostbackup.context import Deadline, RemoteSettings, RunContext
from .compression import format_bytes
from .results import RetentionRecord, TransferFailure, TransferResult, TransferSuccess
from .retention import RetentionManager
from .storage import RemoteStore, StorageError, TransferCancelled, create_store


logger = logging.getLogger(__name__)

VERIFY_ATTEMPTS = 3
VERIFY_DELAY = 1
POLL_INTERVAL = 5
# A remote partial below this share of the local size is discarded, not resumed
RESUME_MIN_RATIO = 0.01


class TransferError(Exception):
    """Raised when an upload attempt cannot complete."""
    pass


class CancellationToken:
    """Set by the waiting thread; checked by the upload worker between chunks."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self):
        if self._event.is_set():
            raise TransferCancelled("Upload cancelled")


class TransferClient:
    """
    Uploads an archive to the remote store with retries and verification.
    """

    def __init__(
        self,
        ctx: RunContext,
        retention: Optional[RetentionManager] = None,
        store_factory: Callable[[RemoteSettings], RemoteStore] = create_store,
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[Deadline] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_interval: float = POLL_INTERVAL
    ):
        """
        Initialize transfer client.

        Args:
            ctx: Run context (remote settings, thresholds, retry policy)
            retention: Runs remote pruning after a verified upload
            store_factory: Builds an unconnected RemoteStore from settings
            sleep: Used for retry backoff and verification pauses
            deadline: Soft deadline checked while waiting on the upload worker
            clock: Monotonic clock for the upload time limit
            poll_interval: Seconds between progress checks on the worker
        """
        self.ctx = ctx
        self.retention = retention
        self.store_factory = store_factory
        self.sleep = sleep
        self.deadline = deadline
        self.clock = clock
        self.poll_interval = poll_interval

    def upload(self, local_artifact: Path) -> TransferResult:
        """
        Upload the archive, retrying whole attempts with exponential backoff.

        Args:
            local_artifact: Verified local archive

        Returns:
            TransferSuccess with the remote deletions from pruning, or
            TransferFailure. A size mismatch after upload leaves the remote
            file in place.
        """
        local_artifact = Path(local_artifact)
        try:
            local_size = local_artifact.stat().st_size
        except OSError as e:
            return TransferFailure(error=f"Local archive not readable: {e}", attempts=0)

        max_attempts = max(1, self.ctx.transfer_max_attempts)
        name = local_artifact.name
        last_error = ''

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                delay = self.ctx.transfer_retry_delay * 2 ** (attempt - 2)
                logger.info(f"Retrying upload in {delay}s (attempt {attempt}/{max_attempts})")
                self.sleep(delay)

            store = None
            try:
                store = self.store_factory(self.ctx.remote)
                store.connect()
                store.ensure_directory()

                self._send(store, local_artifact, name, local_size)

                remote_size = self._verify(store, name, local_size)
                if remote_size != local_size:
                    return TransferFailure(
                        error=(
                            f"Upload verification failed: local {local_size} bytes, "
                            f"remote {remote_size} bytes (remote file preserved)"
                        ),
                        attempts=attempt,
                    )

                logger.info(f"Upload verified: {format_bytes(remote_size)} at {store.description}")
                deleted = self._prune(store)
                return TransferSuccess(
                    remote_path=store.remote_path(name),
                    uploaded_size=remote_size,
                    attempts=attempt,
                    deleted=deleted,
                )

            except ValueError as e:
                return TransferFailure(error=str(e), attempts=attempt)
            except (StorageError, TransferError) as e:
                last_error = str(e)
                logger.warning(f"Upload attempt {attempt}/{max_attempts} failed: {e}")
            finally:
                if store is not None:
                    store.close()

        logger.error(f"Upload failed after {max_attempts} attempts: {last_error}")
        return TransferFailure(error=f"Upload failed after {max_attempts} attempts: {last_error}",
                               attempts=max_attempts)

    def _send(self, store: RemoteStore, local_path: Path, name: str, local_size: int):
        if local_size < self.ctx.resumable_threshold_bytes:
            logger.info(f"Uploading {name} ({format_bytes(local_size)}, standard mode)")
            store.put(local_path, name)
            return

        offset = self._resume_offset(store, name, local_size)
        if offset == local_size:
            logger.info(f"Remote copy of {name} is already complete")
            return

        logger.info(f"Uploading {name} ({format_bytes(local_size)}, resumable mode)")
        self._bounded_put(store, local_path, name, offset)

    def _resume_offset(self, store: RemoteStore, name: str, local_size: int) -> int:
        if not store.supports_resume:
            return 0

        existing = store.size(name)
        if not existing:
            return 0

        if existing < local_size * RESUME_MIN_RATIO:
            logger.info(f"Removing incomplete remote file ({format_bytes(existing)}) before upload")
            store.delete(name)
            return 0

        if existing > local_size:
            logger.warning(f"Remote file {name} is larger than the local archive, overwriting")
            return 0

        logger.info(f"Resuming upload of {name} from {format_bytes(existing)}")
        return existing

    def _bounded_put(self, store: RemoteStore, local_path: Path, name: str, offset: int):
        token = CancellationToken()
        limit = self.ctx.upload_timeout_seconds

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='upload')
        future = pool.submit(store.resumable_put, local_path, name, offset, token.check)
        started = self.clock()

        while True:
            done, _ = wait([future], timeout=self.poll_interval)
            if done:
                pool.shutdown(wait=True)
                future.result()
                return

            elapsed = self.clock() - started
            if elapsed >= limit:
                token.cancel()
                # A worker blocked in a socket write never reaches its next
                # cancellation check; closing the connection unblocks it
                store.abort()
                pool.shutdown(wait=False)
                raise TransferError(f"Upload timeout after {int(elapsed)}s (limit {limit}s)")

            logger.info(f"Upload in progress... ({int(elapsed)}s elapsed)")
            if self.deadline is not None:
                self.deadline.check('Upload', f"{int(elapsed)}s into transfer")

    def _verify(self, store: RemoteStore, name: str, local_size: int) -> Optional[int]:
        remote_size = None
        for attempt in range(1, VERIFY_ATTEMPTS + 1):
            remote_size = store.size(name)
            if remote_size == local_size:
                return remote_size
            if attempt < VERIFY_ATTEMPTS:
                self.sleep(VERIFY_DELAY)

        logger.error(
            f"Upload verification failed for {name}: local {local_size} bytes, remote {remote_size} bytes. "
            f"Remote file preserved for manual inspection."
        )
        return remote_size

    def _prune(self, store: RemoteStore) -> List[RetentionRecord]:
        if self.retention is None:
            return []
        return self.retention.prune(store, self.ctx.remote_retention_count)
