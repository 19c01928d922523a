"""
Backup routes - Web trigger and run history.
"""

import hmac
import threading

from flask import Blueprint, current_app, jsonify, request

from hostbackup.backup.executor import execute_backup
from hostbackup.backup.locking import LockManager
from hostbackup.context import RunContext
from hostbackup.models import BackupRunRecord


bp = Blueprint('backup', __name__, url_prefix='/api/backup')

VALID_STATUSES = ['running', 'success', 'completed_with_warnings', 'failed', 'locked', 'fatal']


def _token_valid(provided: str) -> bool:
    expected = current_app.config.get('WEB_ACCESS_TOKEN') or ''
    if not expected:
        return False
    return hmac.compare_digest(provided.encode('utf-8'), expected.encode('utf-8'))


@bp.route('/run', methods=['GET', 'POST'])
def trigger_run():
    """
    Start a backup run in the background.

    Query params:
        - token: Must match WEB_ACCESS_TOKEN

    Returns:
        202 when started, 403 for a bad token, 409 if a run holds the lock
    """
    provided = request.args.get('token') or request.form.get('token') or ''
    if not _token_valid(provided):
        current_app.logger.warning(f"Rejected backup trigger from {request.remote_addr}")
        return jsonify({'error': 'Access denied'}), 403

    ctx = RunContext.from_config(current_app.config)
    if LockManager(ctx.lock_path, ctx.max_run_seconds).is_locked():
        return jsonify({'error': 'A backup is already running'}), 409

    app = current_app._get_current_object()
    thread = threading.Thread(target=execute_backup, args=(app, 'web'), name='backup-run', daemon=True)
    thread.start()

    return jsonify({'message': 'Backup started'}), 202


@bp.route('/history', methods=['GET'])
def list_history():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by outcome
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    offset = max(offset, 0)

    query = BackupRunRecord.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRunRecord.status == status_filter)

    total_count = query.count()

    records = query.order_by(
        BackupRunRecord.started_at.desc(), BackupRunRecord.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [_summary(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/history/<int:record_id>', methods=['GET'])
def get_history_detail(record_id):
    """
    Get one run record including its logs.

    Args:
        record_id: Run record ID
    """
    record = BackupRunRecord.query.get_or_404(record_id)

    duration_seconds = None
    if record.completed_at:
        duration_seconds = int((record.completed_at - record.started_at).total_seconds())

    data = _summary(record)
    data.update({
        'duration_seconds': duration_seconds,
        'remote_path': record.remote_path,
        'uploaded_size_bytes': record.uploaded_size_bytes,
        'remote_deleted': record.remote_deleted,
        'local_deleted': record.local_deleted,
        'databases_failed': record.databases_failed,
        'logs': record.logs or ''
    })
    return jsonify(data)


def _summary(record: BackupRunRecord) -> dict:
    return {
        'id': record.id,
        'token': record.token,
        'status': record.status,
        'trigger': record.trigger,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'databases_exported': record.databases_exported,
        'archive_name': record.archive_name,
        'archive_size_bytes': record.archive_size_bytes,
        'archive_size_mb': round(record.archive_size_bytes / 1024 / 1024, 2) if record.archive_size_bytes else None,
        'file_count': record.file_count,
        'excluded_count': record.excluded_count,
        'error_message': record.error_message,
        'has_logs': bool(record.logs)
    }
