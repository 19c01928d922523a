"""
Run context for a single backup execution.

Everything a pipeline stage needs from configuration is carried in a frozen
RunContext built once from the Flask config; stages never read app.config
or module globals directly.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple

from .config import ConfigurationError


logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d-%H-%M'
MB = 1024 * 1024


@dataclass(frozen=True)
class RemoteSettings:
    """Connection settings for the remote store."""
    protocol: str = 'ftp'
    host: str = ''
    port: int = 0
    username: str = ''
    password: str = ''
    directory: str = '/backups'
    passive: bool = True
    bucket: str = ''
    region: str = 'us-east-1'

    @property
    def use_tls(self) -> bool:
        return self.protocol == 'ftps'


@dataclass(frozen=True)
class NotificationSettings:
    notify_on_success: bool = True
    notify_on_failure: bool = True
    recipient: str = ''
    sender: str = 'backup@localhost'
    smtp_host: str = ''
    smtp_port: int = 25


@dataclass(frozen=True)
class RunContext:
    """Immutable settings shared by every stage of one backup run."""
    local_backup_dir: Path
    temp_dir: Path
    source_dir: Optional[Path] = None
    database_url: str = ''
    skip_databases: Tuple[str, ...] = ('information_schema', 'performance_schema', 'mysql', 'sys')
    remote: RemoteSettings = field(default_factory=RemoteSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    remote_retention_count: int = 14
    local_retention_count: int = 5
    compression_level: int = 6
    gzip_threshold_bytes: int = 20 * MB
    max_run_seconds: int = 900
    timeout_warning_seconds: int = 840
    upload_timeout_seconds: int = 600
    resumable_threshold_bytes: int = 100 * MB
    transfer_max_attempts: int = 3
    transfer_retry_delay: float = 2.0
    exclude_patterns: Tuple[str, ...] = ()

    @property
    def lock_path(self) -> Path:
        return self.local_backup_dir / 'backup.lock'

    @classmethod
    def from_config(cls, config: Mapping) -> 'RunContext':
        """
        Build a RunContext from a Flask config mapping.

        Args:
            config: app.config or any mapping with the same keys

        Returns:
            RunContext instance
        """
        source_dir = config.get('SOURCE_DIR')

        remote = RemoteSettings(
            protocol=config.get('REMOTE_PROTOCOL', 'ftp').lower(),
            host=config.get('REMOTE_HOST', ''),
            port=int(config.get('REMOTE_PORT') or 0),
            username=config.get('REMOTE_USER', ''),
            password=config.get('REMOTE_PASSWORD', ''),
            directory=config.get('REMOTE_DIR', '/backups'),
            passive=bool(config.get('REMOTE_PASSIVE', True)),
            bucket=config.get('S3_BUCKET', ''),
            region=config.get('S3_REGION', 'us-east-1'),
        )

        notifications = NotificationSettings(
            notify_on_success=bool(config.get('NOTIFY_ON_SUCCESS', True)),
            notify_on_failure=bool(config.get('NOTIFY_ON_FAILURE', True)),
            recipient=config.get('NOTIFY_EMAIL', ''),
            sender=config.get('EMAIL_FROM', 'backup@localhost'),
            smtp_host=config.get('SMTP_HOST', ''),
            smtp_port=int(config.get('SMTP_PORT', 25)),
        )

        return cls(
            local_backup_dir=Path(config['LOCAL_BACKUP_DIR']),
            temp_dir=Path(config['TEMP_DIR']),
            source_dir=Path(source_dir) if source_dir else None,
            database_url=config.get('DATABASE_URL', ''),
            skip_databases=tuple(config.get('SKIP_DATABASES', cls.skip_databases)),
            remote=remote,
            notifications=notifications,
            remote_retention_count=int(config.get('REMOTE_RETENTION_COUNT', 14)),
            local_retention_count=int(config.get('LOCAL_RETENTION_COUNT', 5)),
            compression_level=int(config.get('COMPRESSION_LEVEL', 6)),
            gzip_threshold_bytes=int(config.get('GZIP_THRESHOLD_MB', 20)) * MB,
            max_run_seconds=int(config.get('MAX_RUN_SECONDS', 900)),
            timeout_warning_seconds=int(config.get('TIMEOUT_WARNING_SECONDS', 840)),
            upload_timeout_seconds=int(config.get('UPLOAD_TIMEOUT_SECONDS', 600)),
            resumable_threshold_bytes=int(config.get('RESUMABLE_THRESHOLD_MB', 100)) * MB,
            transfer_max_attempts=int(config.get('TRANSFER_MAX_ATTEMPTS', 3)),
            transfer_retry_delay=float(config.get('TRANSFER_RETRY_DELAY', 2)),
            exclude_patterns=tuple(config.get('EXCLUDE_PATTERNS', ())),
        )


@dataclass
class BackupRun:
    """
    One execution of the pipeline.

    The timestamp token is fixed at creation so every artifact of the run
    shares it.
    """
    started_at: datetime
    started_monotonic: float
    token: str
    outcome: Optional[str] = None

    @classmethod
    def start(cls, now: Optional[datetime] = None) -> 'BackupRun':
        started_at = now or datetime.now()
        return cls(
            started_at=started_at,
            started_monotonic=time.monotonic(),
            token=started_at.strftime(TIMESTAMP_FORMAT),
        )

    def elapsed(self) -> float:
        return time.monotonic() - self.started_monotonic


class Deadline:
    """
    Soft execution deadline.

    Long loops call check() periodically; once the warning threshold is
    crossed a single warning per stage is logged. Nothing is aborted: the
    host's hard limit is what actually stops the process.
    """

    def __init__(self, started_monotonic: float, warning_seconds: float, limit_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.started_monotonic = started_monotonic
        self.warning_seconds = warning_seconds
        self.limit_seconds = limit_seconds
        self._clock = clock
        self._warned: Dict[str, bool] = {}

    @classmethod
    def for_run(cls, run: BackupRun, ctx: RunContext) -> 'Deadline':
        return cls(run.started_monotonic, ctx.timeout_warning_seconds, ctx.max_run_seconds)

    def elapsed(self) -> float:
        return self._clock() - self.started_monotonic

    def check(self, stage: str, detail: str = '') -> bool:
        """
        Warn once per stage when the run is approaching its time limit.

        Returns:
            True if the warning threshold has been crossed
        """
        elapsed = self.elapsed()
        if elapsed <= self.warning_seconds:
            return False

        if not self._warned.get(stage):
            self._warned[stage] = True
            suffix = f" - {detail}" if detail else ''
            logger.warning(
                f"{stage} approaching timeout ({round(elapsed)}s / {self.limit_seconds}s){suffix}"
            )
        return True


def validate_environment(ctx: RunContext, notifier_available: bool = True):
    """
    Check that required directories exist and are writable.

    Args:
        ctx: Run context
        notifier_available: Whether a notification channel could be set up

    Raises:
        ConfigurationError: If the run cannot safely start
    """
    required = [
        ('Local backup directory', ctx.local_backup_dir),
        ('Temporary directory', ctx.temp_dir),
    ]
    if ctx.source_dir is not None:
        required.append(('Backup source directory', ctx.source_dir))

    for description, directory in required:
        if not directory.is_dir():
            raise ConfigurationError(f"{description} does not exist: {directory}")
        if not os.access(directory, os.W_OK | os.X_OK) and description != 'Backup source directory':
            raise ConfigurationError(f"{description} is not writable: {directory} (check permissions)")
        if not os.access(directory, os.R_OK | os.X_OK):
            raise ConfigurationError(f"{description} is not readable: {directory} (check permissions)")

    for name, count in (('REMOTE_RETENTION_COUNT', ctx.remote_retention_count),
                        ('LOCAL_RETENTION_COUNT', ctx.local_retention_count)):
        if count < 1:
            raise ConfigurationError(f"{name} must be at least 1 (got {count})")

    notifying = ctx.notifications.notify_on_success or ctx.notifications.notify_on_failure
    if notifying and not notifier_available:
        raise ConfigurationError("Notifications are enabled but no delivery channel is available")
