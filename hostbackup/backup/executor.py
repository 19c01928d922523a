"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate the environment and take the run lock
2. Discover and export every database (failures do not stop the run)
3. Build and verify the archive
4. Upload the archive, then prune the remote store
5. Prune the local backup directory
6. Delete dump files once the upload is verified
7. Release the lock, notify, record the outcome
"""

import atexit
import logging
import os
import signal
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from hostbackup.config import ConfigurationError
from hostbackup.context import BackupRun, Deadline, RemoteSettings, RunContext, validate_environment
from hostbackup.notifications import LogNotifier, NotificationError, Notifier, create_notifier
from .archive import ArchiveBuilder, disk_free_space
from .compression import DUMP_PATTERN, format_bytes
from .database import DatabaseExporter, ExportError
from .locking import LockContention, LockManager
from .results import (
    ArchiveResult,
    DatabaseExportResult,
    ExportSuccess,
    RetentionRecord,
    RunOutcome,
    TransferResult,
)
from .retention import RetentionManager
from .storage import LocalDirectory, RemoteStore, create_store
from .transfer import TransferClient


logger = logging.getLogger(__name__)


class RunGuard:
    """
    Finalizer for one backup run.

    Releases the lock on every exit path: normal return, exceptions
    (including KeyboardInterrupt and SystemExit), interpreter shutdown via
    atexit, and SIGTERM when running in the main thread. If the run did not
    complete, on_abort is called once before the lock is released.
    """

    def __init__(self, lock: LockManager, on_abort: Callable[[str], None]):
        self.lock = lock
        self.on_abort = on_abort
        self.completed = False
        self._aborted = False
        self._previous_handler = None
        self._handler_installed = False

    def __enter__(self) -> 'RunGuard':
        atexit.register(self._at_exit)
        if threading.current_thread() is threading.main_thread():
            self._previous_handler = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGTERM, self._on_sigterm)
            self._handler_installed = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is not None and not self.completed:
                self._abort(f"{exc_type.__name__}: {exc_val}")
        finally:
            self.lock.release()
            atexit.unregister(self._at_exit)
            if self._handler_installed:
                previous = self._previous_handler if self._previous_handler is not None else signal.SIG_DFL
                signal.signal(signal.SIGTERM, previous)
                self._handler_installed = False
        return False

    def _on_sigterm(self, signum, frame):
        # Unwind through __exit__ so cleanup runs on the normal path
        raise SystemExit(128 + signum)

    def _at_exit(self):
        if not self.completed:
            self._abort("Process exited before the backup run completed")
        self.lock.release()

    def _abort(self, reason: str):
        if self._aborted:
            return
        self._aborted = True
        self.on_abort(reason)


class HistoryRecorder:
    """
    Persists run progress to a BackupRunRecord.

    Requires an application context. Database errors are logged and never
    interrupt the backup itself.
    """

    def __init__(self, trigger: str = 'cli'):
        self.trigger = trigger
        self.record = None

    def start(self, run: BackupRun):
        from hostbackup.models import BackupRunRecord
        self.record = BackupRunRecord(
            token=run.token,
            status='running',
            trigger=self.trigger,
            started_at=datetime.utcnow()
        )
        self._commit(add=True)

    def update(self, **fields):
        if self.record is None:
            return
        for name, value in fields.items():
            setattr(self.record, name, value)
        self._commit()

    def flush_logs(self, logs: List[str]):
        self.update(logs='\n'.join(logs))

    def _commit(self, add: bool = False):
        from hostbackup import db
        try:
            if add:
                db.session.add(self.record)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.warning(f"Failed to save run history: {e}")


class BackupExecutor:
    """
    Orchestrates one backup run.
    """

    def __init__(
        self,
        ctx: RunContext,
        notifier: Optional[Notifier] = None,
        engine: Optional[Engine] = None,
        store_factory: Callable[[RemoteSettings], RemoteStore] = create_store,
        recorder: Optional[HistoryRecorder] = None,
        sleep: Callable[[float], None] = time.sleep,
        free_space: Callable[[Path], Optional[int]] = disk_free_space,
        now: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize backup executor.

        Args:
            ctx: Run context
            notifier: Delivery channel; built from ctx.notifications if omitted
            engine: SQLAlchemy engine for the database server
            store_factory: Builds the remote store for uploads
            recorder: Run history persistence (optional)
            sleep: Used for transfer retry backoff
            free_space: Free-space probe for the archive preflight
            now: Wall clock used to fix the run timestamp
        """
        self.ctx = ctx
        self.notifier = notifier if notifier is not None else create_notifier(ctx.notifications)
        self.engine = engine
        self.store_factory = store_factory
        self.recorder = recorder
        self.sleep = sleep
        self.free_space = free_space
        self.now = now

        self.run: Optional[BackupRun] = None
        self.deadline: Optional[Deadline] = None
        self.retention = RetentionManager()
        self.exports: List[DatabaseExportResult] = []
        self.archive: Optional[ArchiveResult] = None
        self.transfer: Optional[TransferResult] = None
        self.local_deleted: List[RetentionRecord] = []
        self.outcome_error: Optional[str] = None
        self.logs: List[str] = []
        self._log_flush_counter = 0

    def execute(self) -> RunOutcome:
        """
        Execute the backup run.

        Returns:
            Terminal RunOutcome. Unexpected exceptions are reported as FATAL;
            KeyboardInterrupt and SystemExit propagate after cleanup.
        """
        self.run = BackupRun.start(self.now())
        self.deadline = Deadline.for_run(self.run, self.ctx)

        if self.recorder is not None:
            self.recorder.start(self.run)

        self._log(f"=== BACKUP STARTED ({self.run.token}) ===")

        try:
            validate_environment(self.ctx, notifier_available=not isinstance(self.notifier, LogNotifier))
        except ConfigurationError as e:
            self._log(f"Configuration error: {e}", logging.ERROR)
            self._notify_failure(f"Backup FAILED - Configuration Error - {self._date()}", str(e))
            return self._finish(RunOutcome.FAILED, error=str(e))
        self._log("Configuration validation passed")

        lock = LockManager(self.ctx.lock_path, self.ctx.max_run_seconds)
        try:
            lock.require()
        except LockContention as e:
            self._log(str(e), logging.ERROR)
            return self._finish(RunOutcome.LOCKED, error=str(e))

        try:
            with RunGuard(lock, self._abort) as guard:
                outcome = self._execute_workflow()
                guard.completed = True
        except Exception as e:
            return self._finish(RunOutcome.FATAL, error=f"{type(e).__name__}: {e}")

        return self._finish(outcome)

    def _execute_workflow(self) -> RunOutcome:
        """Run the pipeline stages and decide the outcome."""
        self._log("=== Database Backup ===")
        self.exports = self._export_databases()
        self._flush_logs_to_db()

        self._log("=== Creating Archive ===")
        builder = ArchiveBuilder(self.ctx, self.run.token, deadline=self.deadline, free_space=self.free_space)
        self.archive = builder.build(self.exports)

        if not self.archive.success:
            error = f"Archive creation failed: {self.archive.error}"
            self._log(error, logging.ERROR)
            self._purge_dumps()
            self._prune_local()
            self._notify_failure(f"Backup FAILED - {self._date()}", error)
            self.outcome_error = error
            return RunOutcome.FAILED

        self._log(
            f"Archive created: {self.archive.path.name} ({format_bytes(self.archive.size)}, "
            f"{self.archive.file_count} files, {self.archive.excluded_count} excluded)"
        )
        self._flush_logs_to_db()

        self._log("=== Remote Upload ===")
        client = TransferClient(
            self.ctx,
            retention=self.retention,
            store_factory=self.store_factory,
            sleep=self.sleep,
            deadline=self.deadline
        )
        self.transfer = client.upload(self.archive.path)

        if self.transfer.success:
            self._log(
                f"Upload successful: {self.transfer.remote_path} ({format_bytes(self.transfer.uploaded_size)}, "
                f"{len(self.transfer.deleted)} old remote backup(s) deleted)"
            )
        else:
            self._log(f"Upload failed: {self.transfer.error}", logging.WARNING)
        self._flush_logs_to_db()

        self._log("=== Local Retention ===")
        self._prune_local()

        if self.transfer.success:
            self._log("Upload verified, cleaning up database dump files")
            # Dumps kept by earlier degraded runs are superseded by this upload
            self._purge_dumps(current_run_only=False)
            self._notify(f"Backup Completed - {self._date()}", self._summary(), self.ctx.notifications.notify_on_success)
            return RunOutcome.SUCCESS

        self._log("Upload failed, keeping database dump files for retry", logging.WARNING)
        notify = self.ctx.notifications.notify_on_success or self.ctx.notifications.notify_on_failure
        self._notify(f"Backup Completed with warnings - {self._date()}", self._summary(), notify)
        self.outcome_error = self.transfer.error
        return RunOutcome.DEGRADED

    def _export_databases(self) -> List[DatabaseExportResult]:
        exporter = DatabaseExporter(self.ctx, self.run.token, engine=self.engine, deadline=self.deadline)

        try:
            names = exporter.discover()
        except ExportError as e:
            self._log(f"{e}; continuing without databases", logging.ERROR)
            return []

        results = []
        for name in names:
            result = exporter.export(name)
            results.append(result)

            if result.success:
                self._log(f"Database {name} backed up ({format_bytes(result.compressed_size)})")
            else:
                self._log(f"Database {name} export failed: {result.error}", logging.ERROR)

            self.deadline.check('Database export')

        return results

    def _prune_local(self):
        try:
            self.local_deleted = self.retention.prune(
                LocalDirectory(self.ctx.local_backup_dir), self.ctx.local_retention_count
            )
        except ValueError as e:
            self._log(f"Local retention skipped: {e}", logging.WARNING)
            return
        self._log(f"Local retention: kept {self.ctx.local_retention_count}, deleted {len(self.local_deleted)}")

    def _purge_dumps(self, current_run_only: bool = True):
        """Remove dump files from the temp directory (only this run's unless told otherwise)."""
        suffixes = (f"_{self.run.token}.sql", f"_{self.run.token}.sql.gz")
        try:
            names = os.listdir(self.ctx.temp_dir)
        except OSError as e:
            self._log(f"Could not list temp directory for cleanup: {e}", logging.WARNING)
            return

        for name in names:
            if not DUMP_PATTERN.match(name) or (current_run_only and not name.endswith(suffixes)):
                continue
            try:
                os.remove(self.ctx.temp_dir / name)
                self._log(f"Cleaned up temp file: {name}", logging.DEBUG)
            except OSError as e:
                self._log(f"Failed to remove temp file {name}: {e}", logging.WARNING)

    def _abort(self, reason: str):
        """Fatal-path cleanup, called by RunGuard."""
        self._log(f"FATAL: backup run aborted: {reason}", logging.CRITICAL)
        self._purge_dumps()
        self._notify_failure(f"Backup FAILED - {self._date()}", f"Backup run aborted: {reason}")
        if self.recorder is not None:
            self.recorder.update(
                status=RunOutcome.FATAL.value,
                completed_at=datetime.utcnow(),
                error_message=reason
            )
            self._flush_logs_to_db()

    def _finish(self, outcome: RunOutcome, error: Optional[str] = None) -> RunOutcome:
        self.run.outcome = outcome.value
        error = error or self.outcome_error
        elapsed = round(self.run.elapsed(), 2)

        if outcome == RunOutcome.SUCCESS:
            self._log(f"=== BACKUP COMPLETED in {elapsed}s ===")
        elif outcome == RunOutcome.DEGRADED:
            self._log(f"=== BACKUP COMPLETED WITH WARNINGS in {elapsed}s ===", logging.WARNING)
        else:
            self._log(f"=== BACKUP {outcome.value.upper()} after {elapsed}s ===", logging.ERROR)

        if self.recorder is not None:
            fields = {
                'status': outcome.value,
                'completed_at': datetime.utcnow(),
                'error_message': error,
                'databases_exported': sum(1 for result in self.exports if result.success),
                'databases_failed': sum(1 for result in self.exports if not result.success),
                'local_deleted': len(self.local_deleted),
            }
            if self.archive is not None and self.archive.success:
                fields.update(
                    archive_name=self.archive.path.name,
                    archive_size_bytes=self.archive.size,
                    file_count=self.archive.file_count,
                    excluded_count=self.archive.excluded_count,
                )
            if self.transfer is not None and self.transfer.success:
                fields.update(
                    remote_path=self.transfer.remote_path,
                    uploaded_size_bytes=self.transfer.uploaded_size,
                    remote_deleted=len(self.transfer.deleted),
                )
            self.recorder.update(**fields)
            self._flush_logs_to_db()

        return outcome

    def _summary(self) -> str:
        lines = [
            f"Date: {self.run.started_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"Time: {round(self.run.elapsed(), 2)}s",
            "",
            "Databases:",
        ]
        for result in self.exports:
            if isinstance(result, ExportSuccess):
                lines.append(f"  - {result.database}: {format_bytes(result.compressed_size)}")
            else:
                lines.append(f"  - {result.database}: FAILED ({result.error})")

        if self.archive is not None and self.archive.success:
            lines += [
                "",
                "Archive:",
                f"  - Files: {self.archive.file_count}",
                f"  - Size: {format_bytes(self.archive.size)}",
            ]

        if self.transfer is not None:
            lines += ["", "Remote:"]
            if self.transfer.success:
                lines.append(f"  - Uploaded: {format_bytes(self.transfer.uploaded_size)}")
                lines.append(f"  - Old backups deleted: {len(self.transfer.deleted)}")
            else:
                lines.append(f"  - Upload failed: {self.transfer.error}")

        lines.append(f"Local old backups deleted: {len(self.local_deleted)}")
        return "\n".join(lines) + "\n"

    def _notify_failure(self, subject: str, error: str):
        body = f"Error: {error}\nTime: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n"
        self._notify(subject, body, self.ctx.notifications.notify_on_failure)

    def _notify(self, subject: str, body: str, enabled: bool):
        if not enabled:
            self._log(f"Notification suppressed by configuration: {subject}")
            return
        try:
            self.notifier.send(subject, body)
        except NotificationError as e:
            self._log(str(e), logging.WARNING)

    def _date(self) -> str:
        return self.run.started_at.strftime('%Y-%m-%d %H:%M')

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {logging.getLevelName(level)}: {message}")
        logger.log(level, message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to the run record for real-time visibility."""
        if self.recorder is not None:
            self.recorder.flush_logs(self.logs)
        self._log_flush_counter = 0


def execute_backup(app, trigger: str = 'cli') -> RunOutcome:
    """
    Execute a backup run with the application's configuration.

    Args:
        app: Flask application
        trigger: 'cli' or 'web', stored on the run record

    Returns:
        Terminal RunOutcome
    """
    with app.app_context():
        ctx = RunContext.from_config(app.config)
        executor = BackupExecutor(ctx, recorder=HistoryRecorder(trigger))
        return executor.execute()
