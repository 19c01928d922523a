"""
Unit tests for the web trigger, run history API and CLI command.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

from hostbackup.backup.locking import LockManager
from hostbackup.backup.results import RunOutcome
from hostbackup.context import RunContext
from hostbackup.models import BackupRunRecord


def add_record(db, token, status, started_at, **fields):
    record = BackupRunRecord(token=token, status=status, started_at=started_at, **fields)
    db.session.add(record)
    db.session.commit()
    return record


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestTriggerRun:
    """Test the token-protected web trigger."""

    def test_missing_token_is_rejected(self, client):
        response = client.get('/api/backup/run')

        assert response.status_code == 403

    def test_wrong_token_is_rejected(self, client):
        response = client.get('/api/backup/run?token=nope')

        assert response.status_code == 403

    def test_unconfigured_token_always_rejects(self, app, client):
        app.config['WEB_ACCESS_TOKEN'] = ''

        response = client.get('/api/backup/run?token=')

        assert response.status_code == 403

    def test_valid_token_starts_background_run(self, app, client):
        """Test that the run starts on a background thread."""
        with patch('hostbackup.routes.backup_routes.threading.Thread') as mock_thread:
            response = client.post('/api/backup/run', data={'token': 'test-token'})

        assert response.status_code == 202
        _, kwargs = mock_thread.call_args
        assert kwargs['args'][1] == 'web'
        assert kwargs['daemon'] is True
        mock_thread.return_value.start.assert_called_once()

    def test_running_backup_returns_conflict(self, app, client):
        ctx = RunContext.from_config(app.config)
        lock = LockManager(ctx.lock_path, ctx.max_run_seconds)
        lock.require()

        with patch('hostbackup.routes.backup_routes.threading.Thread') as mock_thread:
            response = client.get('/api/backup/run?token=test-token')

        lock.release()
        assert response.status_code == 409
        mock_thread.assert_not_called()


class TestHistory:
    """Test the run history endpoints."""

    def test_list_newest_first(self, client, db):
        base = datetime(2024, 6, 1, 2, 0)
        add_record(db, '2024-06-01-02-00', 'success', base, archive_size_bytes=2 * 1024 * 1024)
        add_record(db, '2024-06-02-02-00', 'failed', base + timedelta(days=1), error_message='disk full')

        response = client.get('/api/backup/history')

        data = response.get_json()
        assert response.status_code == 200
        assert data['total'] == 2
        assert [record['token'] for record in data['records']] == ['2024-06-02-02-00', '2024-06-01-02-00']
        assert data['records'][1]['archive_size_mb'] == 2.0
        assert data['records'][0]['error_message'] == 'disk full'

    def test_filter_and_pagination(self, client, db):
        base = datetime(2024, 6, 1, 2, 0)
        for day in range(5):
            add_record(db, f'2024-06-0{day + 1}-02-00', 'success', base + timedelta(days=day))
        add_record(db, '2024-06-09-02-00', 'locked', base + timedelta(days=8))

        response = client.get('/api/backup/history?status=success&limit=2&offset=1')

        data = response.get_json()
        assert data['total'] == 5
        assert data['limit'] == 2
        assert [record['token'] for record in data['records']] == ['2024-06-04-02-00', '2024-06-03-02-00']

    def test_invalid_status_filter(self, client, db):
        response = client.get('/api/backup/history?status=bogus')

        assert response.status_code == 400

    def test_detail_includes_logs_and_duration(self, client, db):
        started = datetime(2024, 6, 1, 2, 0)
        record = add_record(
            db, '2024-06-01-02-00', 'success', started,
            completed_at=started + timedelta(seconds=95), logs='[..] INFO: done'
        )

        response = client.get(f'/api/backup/history/{record.id}')

        data = response.get_json()
        assert data['duration_seconds'] == 95
        assert data['logs'] == '[..] INFO: done'

    def test_detail_not_found(self, client, db):
        response = client.get('/api/backup/history/999')

        assert response.status_code == 404


class TestRunBackupCommand:
    """Test the cron entry point."""

    def test_exit_code_success(self, runner):
        with patch('hostbackup.backup.executor.execute_backup', return_value=RunOutcome.SUCCESS):
            result = runner.invoke(args=['run-backup'])

        assert result.exit_code == 0
        assert 'success' in result.output

    def test_exit_code_degraded(self, runner):
        with patch('hostbackup.backup.executor.execute_backup', return_value=RunOutcome.DEGRADED):
            result = runner.invoke(args=['run-backup'])

        assert result.exit_code == 0

    def test_exit_code_locked(self, runner):
        with patch('hostbackup.backup.executor.execute_backup', return_value=RunOutcome.LOCKED):
            result = runner.invoke(args=['run-backup'])

        assert result.exit_code == 1
