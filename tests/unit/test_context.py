"""
Unit tests for the run context, deadline and environment checks.
"""

import logging
from datetime import datetime
from pathlib import Path

import pytest
from freezegun import freeze_time

from hostbackup.config import ConfigurationError
from hostbackup.context import MB, BackupRun, Deadline, RunContext, validate_environment


class TestRunContext:
    """Test building the context from configuration."""

    def test_from_config(self, app):
        ctx = RunContext.from_config(app.config)

        assert ctx.local_backup_dir == Path(app.config['LOCAL_BACKUP_DIR'])
        assert ctx.lock_path == ctx.local_backup_dir / 'backup.lock'
        assert ctx.gzip_threshold_bytes == 20 * MB
        assert ctx.remote.protocol == 'ftp'
        assert ctx.exclude_patterns == (r'/cache/',)

    def test_from_mapping_with_overrides(self, tmp_path):
        ctx = RunContext.from_config({
            'LOCAL_BACKUP_DIR': str(tmp_path),
            'TEMP_DIR': str(tmp_path),
            'SOURCE_DIR': '',
            'REMOTE_PROTOCOL': 'SFTP',
            'REMOTE_PORT': '2222',
            'RESUMABLE_THRESHOLD_MB': 50,
        })

        assert ctx.source_dir is None
        assert ctx.remote.protocol == 'sftp'
        assert ctx.remote.port == 2222
        assert ctx.resumable_threshold_bytes == 50 * MB

    def test_context_is_frozen(self, make_context):
        ctx = make_context()

        with pytest.raises(AttributeError):
            ctx.local_retention_count = 1


class TestBackupRun:

    @freeze_time('2024-01-15 02:30:45')
    def test_token_fixed_at_start(self):
        run = BackupRun.start()

        assert run.token == '2024-01-15-02-30'
        assert run.started_at == datetime(2024, 1, 15, 2, 30, 45)

    def test_explicit_start_time(self):
        assert BackupRun.start(datetime(2024, 12, 31, 23, 59)).token == '2024-12-31-23-59'


class TestDeadline:
    """Test the soft time limit."""

    def test_warns_once_per_stage(self, caplog):
        now = [0.0]
        deadline = Deadline(0.0, warning_seconds=840, limit_seconds=900, clock=lambda: now[0])

        assert deadline.check('Archive') is False

        now[0] = 850.0
        with caplog.at_level(logging.WARNING, logger='hostbackup.context'):
            assert deadline.check('Archive', '500 files') is True
            assert deadline.check('Archive') is True
            assert deadline.check('Upload') is True

        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 2
        assert warnings[0] == 'Archive approaching timeout (850s / 900s) - 500 files'


class TestValidateEnvironment:
    """Test pre-run checks."""

    def test_valid_environment(self, make_context):
        validate_environment(make_context())

    def test_missing_directory(self, make_context, tmp_path):
        with pytest.raises(ConfigurationError, match='Temporary directory does not exist'):
            validate_environment(make_context(temp_dir=tmp_path / 'nope'))

    def test_retention_must_be_positive(self, make_context):
        with pytest.raises(ConfigurationError, match='LOCAL_RETENTION_COUNT'):
            validate_environment(make_context(local_retention_count=0))

    def test_notifications_need_a_channel(self, make_context):
        with pytest.raises(ConfigurationError, match='no delivery channel'):
            validate_environment(make_context(), notifier_available=False)
