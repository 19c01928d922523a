from datetime import datetime
from hostbackup import db


class BackupRunRecord(db.Model):
    """Backup run history and logs"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    token = db.Column(db.String(20), nullable=False, index=True)  # YYYY-MM-DD-HH-mm
    status = db.Column(db.String(30), nullable=False)  # running, success, completed_with_warnings, failed, locked, fatal
    trigger = db.Column(db.String(20), default='cli', nullable=False)  # cli or web
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    databases_exported = db.Column(db.Integer, default=0, nullable=False)
    databases_failed = db.Column(db.Integer, default=0, nullable=False)
    archive_name = db.Column(db.String(255))
    archive_size_bytes = db.Column(db.BigInteger)
    file_count = db.Column(db.Integer)
    excluded_count = db.Column(db.Integer)
    remote_path = db.Column(db.String(500))
    uploaded_size_bytes = db.Column(db.BigInteger)
    remote_deleted = db.Column(db.Integer, default=0, nullable=False)
    local_deleted = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    def __repr__(self):
        return f'<BackupRunRecord token={self.token} status={self.status}>'
