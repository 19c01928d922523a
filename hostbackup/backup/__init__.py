"""
Backup module for hostbackup.

This module handles the backup pipeline:
- Run locking
- Database export and dump compression
- Archive creation
- Remote transfer (FTP/FTPS, SFTP, S3)
- Count-based retention
- Execution orchestration
"""

from .executor import BackupExecutor, RunGuard, execute_backup
from .locking import LockManager
from .database import DatabaseExporter
from .archive import ArchiveBuilder
from .storage import FTPStore, SFTPStore, S3Store, LocalDirectory, create_store
from .transfer import TransferClient
from .retention import RetentionManager
from .results import RunOutcome

__all__ = [
    'BackupExecutor',
    'RunGuard',
    'execute_backup',
    'LockManager',
    'DatabaseExporter',
    'ArchiveBuilder',
    'FTPStore',
    'SFTPStore',
    'S3Store',
    'LocalDirectory',
    'create_store',
    'TransferClient',
    'RetentionManager',
    'RunOutcome'
]
