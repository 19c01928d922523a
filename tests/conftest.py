"""
Shared pytest fixtures for hostbackup tests.

This module provides fixtures for:
- Flask app, test client and CLI runner with in-memory SQLite
- Backup directories and a RunContext factory
- An in-memory fake remote store
- SQLite engines with attached databases standing in for a MySQL server
- Mock fixtures for external services (S3, SSH)
"""

import os
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import create_engine, event

from hostbackup import create_app, db as _db
from hostbackup.backup.storage import ListingEntry, RemoteStore, StorageError
from hostbackup.context import NotificationSettings, RemoteSettings, RunContext


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    base = tmp_path / 'app'

    app = create_app('development', test_config={
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SECRET_KEY': 'test-secret-key',
        'TEMP_DIR': str(base / 'temp'),
        'LOCAL_BACKUP_DIR': str(base / 'backups'),
        'SOURCE_DIR': str(base / 'source'),
        'LOG_DIR': str(base / 'logs'),
        'WEB_ACCESS_TOKEN': 'test-token',
        'EXCLUDE_PATTERNS': [r'/cache/'],
    })

    os.makedirs(app.config['SOURCE_DIR'], exist_ok=True)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def backup_dirs(tmp_path):
    """
    Create the directories a run works in.

    Creates:
    - backups/ (local backup directory)
    - temp/ (database dumps)
    - source/ (tree to archive)
    """
    dirs = SimpleNamespace(
        backups=tmp_path / 'backups',
        temp=tmp_path / 'temp',
        source=tmp_path / 'source',
    )
    for path in vars(dirs).values():
        path.mkdir()
    return dirs


@pytest.fixture
def make_context(backup_dirs):
    """
    Factory for RunContext instances rooted in backup_dirs.

    Keyword arguments override any RunContext field.
    """
    base = RunContext(
        local_backup_dir=backup_dirs.backups,
        temp_dir=backup_dirs.temp,
        source_dir=backup_dirs.source,
        database_url='sqlite://',
        skip_databases=('main',),
        remote=RemoteSettings(protocol='ftp', host='ftp.example.com', username='user',
                              password='pass', directory='/backups'),
        notifications=NotificationSettings(),
        exclude_patterns=(r'/cache/',),
        transfer_retry_delay=2,
    )

    def _make(**overrides) -> RunContext:
        return replace(base, **overrides)

    return _make


class FakeServer:
    """In-memory remote: files by name, optional mtimes and LIST lines."""

    def __init__(self):
        self.files = {}
        self.mtimes = {}
        self.lines = {}
        self.puts = []
        self.resumes = []
        self.connects = 0
        self.closes = 0
        self.connect_failures = 0
        self.truncate_uploads = False
        self.undeletable = set()

    def factory(self, settings):
        return FakeRemoteStore(settings, self)

    def add_archive(self, name, data=b'old archive', modified=None, line=''):
        self.files[name] = data
        if modified is not None:
            self.mtimes[name] = modified
        if line:
            self.lines[name] = line


class FakeRemoteStore(RemoteStore):
    """RemoteStore backed by a FakeServer."""

    def __init__(self, settings, server):
        super().__init__(settings)
        self.server = server
        self.description = 'fake://remote/backups'

    def connect(self):
        self.server.connects += 1
        if self.server.connect_failures > 0:
            self.server.connect_failures -= 1
            raise StorageError("Connection refused")

    def ensure_directory(self):
        pass

    def listing(self):
        return [ListingEntry(name, self.server.lines.get(name, '')) for name in sorted(self.server.files)]

    def size(self, name):
        data = self.server.files.get(name)
        return len(data) if data is not None else None

    def modified_time(self, name):
        return self.server.mtimes.get(name)

    def put(self, local_path, name, cancel_check=None):
        data = Path(local_path).read_bytes()
        if self.server.truncate_uploads:
            data = data[:len(data) // 2]
        self.server.files[name] = data
        self.server.mtimes[name] = datetime.now()
        self.server.puts.append(name)

    def resumable_put(self, local_path, name, offset, cancel_check=None):
        data = Path(local_path).read_bytes()
        existing = self.server.files.get(name, b'')[:offset]
        self.server.files[name] = existing + data[offset:]
        self.server.mtimes[name] = datetime.now()
        self.server.resumes.append((name, offset))

    def delete(self, name):
        if name in self.server.undeletable:
            raise StorageError(f"Permission denied: {name}")
        self.server.files.pop(name, None)
        self.server.mtimes.pop(name, None)

    def close(self):
        self.server.closes += 1


@pytest.fixture
def fake_server():
    """In-memory remote server; pass fake_server.factory as a store factory."""
    return FakeServer()


@pytest.fixture
def attached_engine(tmp_path):
    """
    Build SQLite engines that look like a multi-database server.

    Each named database is a separate file ATTACHed on connect, so the
    inspector reports it as a schema next to 'main'.
    """
    engines = []

    def _make(*names):
        engine = create_engine(f"sqlite:///{tmp_path / 'main.db'}")

        @event.listens_for(engine, 'connect')
        def attach(dbapi_connection, connection_record):
            for name in names:
                dbapi_connection.execute(f"ATTACH DATABASE '{tmp_path / (name + '.db')}' AS {name}")

        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.dispose()


@pytest.fixture
def notifier():
    """Notifier double recording every send()."""
    return MagicMock()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; its return_value.open_sftp.return_value is
    the SFTP client mock.
    """
    with patch('hostbackup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def mock_ftp():
    """Mock ftplib.FTP; yields the client instance mock."""
    with patch('hostbackup.backup.storage.ftplib.FTP') as mock_ftp_class:
        yield mock_ftp_class.return_value
