"""
Unit tests for storage locations (hostbackup/backup/storage.py).

Tests FTPStore and SFTPStore against mocked clients, S3Store against moto,
and LocalDirectory against the filesystem.
"""

import ftplib
import os
from datetime import datetime
from unittest.mock import MagicMock, call

import pytest
import boto3
from moto import mock_aws

from hostbackup.backup.storage import (
    FTPStore,
    LocalDirectory,
    S3Store,
    SFTPStore,
    StorageError,
    TransferCancelled,
    create_store,
    parse_listing_name,
)
from hostbackup.context import RemoteSettings


FTP_SETTINGS = RemoteSettings(protocol='ftp', host='ftp.example.com', username='user',
                              password='secret', directory='/backups/site')
S3_SETTINGS = RemoteSettings(protocol='s3', bucket='test-bucket', region='us-east-1',
                             username='testing', password='testing', directory='/backups')


class TestFTPStore:
    """Test FTPStore with a mocked ftplib client."""

    def test_connect_logs_in_with_passive_mode(self, mock_ftp):
        store = FTPStore(FTP_SETTINGS)

        store.connect()

        mock_ftp.connect.assert_called_once_with(host='ftp.example.com', port=21)
        mock_ftp.login.assert_called_once_with(user='user', passwd='secret')
        mock_ftp.set_pasv.assert_called_once_with(True)

    def test_connect_failure_raises_storage_error(self, mock_ftp):
        mock_ftp.login.side_effect = ftplib.error_perm('530 Login incorrect')
        store = FTPStore(FTP_SETTINGS)

        with pytest.raises(StorageError, match='FTP connection'):
            store.connect()
        mock_ftp.close.assert_called_once()

    def test_ensure_directory_creates_missing_components(self, mock_ftp):
        """Test that each missing path component is created then entered."""
        missing = {'site'}

        def cwd(path):
            if path in missing:
                missing.discard(path)
                raise ftplib.error_perm('550 No such directory')

        mock_ftp.cwd.side_effect = cwd
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        store.ensure_directory()

        mock_ftp.mkd.assert_called_once_with('site')
        assert mock_ftp.cwd.call_args_list == [call('/'), call('backups'), call('site'), call('site')]

    def test_abort_closes_without_quit(self, mock_ftp):
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        store.abort()
        store.close()

        mock_ftp.quit.assert_not_called()
        mock_ftp.close.assert_called_once()

    def test_modified_time_parses_mdtm(self, mock_ftp):
        mock_ftp.voidcmd.return_value = '213 20240115103000'
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        assert store.modified_time('backup.zip') == datetime(2024, 1, 15, 10, 30)

    def test_modified_time_unsupported_returns_none(self, mock_ftp):
        mock_ftp.voidcmd.side_effect = ftplib.error_perm('500 Unknown command')
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        assert store.modified_time('backup.zip') is None

    def test_size_missing_file_returns_none(self, mock_ftp):
        mock_ftp.size.side_effect = ftplib.error_perm('550 Not found')
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        assert store.size('backup.zip') is None

    def test_listing_parses_list_lines(self, mock_ftp):
        lines = [
            'drwxr-xr-x 2 user group 4096 Jan 15 10:30 old',
            '-rw-r--r-- 1 user group 1234 Jan 15 10:30 backup-2024-01-15-10-30.zip',
            'total 8',
        ]
        mock_ftp.retrlines.side_effect = lambda command, callback: [callback(line) for line in lines]
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        entries = store.listing()

        assert [entry.name for entry in entries] == ['backup-2024-01-15-10-30.zip']
        assert entries[0].line == lines[1]

    def test_resumable_put_sends_rest_offset(self, mock_ftp, tmp_path):
        """Test that a resumed upload starts at the offset."""
        local = tmp_path / 'backup.zip'
        local.write_bytes(b'0123456789')
        sent = {}

        def storbinary(command, fp, blocksize, callback, rest):
            sent['command'] = command
            sent['data'] = fp.read()
            sent['rest'] = rest

        mock_ftp.storbinary.side_effect = storbinary
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        store.resumable_put(local, 'backup.zip', 4)

        assert sent == {'command': 'STOR backup.zip', 'data': b'456789', 'rest': 4}

    def test_cancellation_propagates(self, mock_ftp, tmp_path):
        local = tmp_path / 'backup.zip'
        local.write_bytes(b'data')

        def storbinary(command, fp, blocksize, callback, rest):
            callback(fp.read())

        def cancelled():
            raise TransferCancelled('Upload cancelled')

        mock_ftp.storbinary.side_effect = storbinary
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        with pytest.raises(TransferCancelled):
            store.put(local, 'backup.zip', cancel_check=cancelled)

    def test_close_quits(self, mock_ftp):
        store = FTPStore(FTP_SETTINGS)
        store.connect()

        store.close()
        store.close()

        mock_ftp.quit.assert_called_once()


class TestSFTPStore:
    """Test SFTPStore with a mocked paramiko client."""

    def test_connect_opens_sftp(self, mock_ssh_client):
        store = SFTPStore(RemoteSettings(protocol='sftp', host='sftp.example.com', username='u', password='p'))

        store.connect()

        mock_ssh_client.return_value.connect.assert_called_once_with(
            hostname='sftp.example.com', port=22, username='u', timeout=30, password='p'
        )
        assert store.sftp_client is mock_ssh_client.return_value.open_sftp.return_value
        store.sftp_client.get_channel.return_value.settimeout.assert_called_once_with(30)

    def test_put_streams_file(self, mock_ssh_client, tmp_path):
        local = tmp_path / 'backup.zip'
        local.write_bytes(b'payload')
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        remote_file = sftp.open.return_value.__enter__.return_value
        store = SFTPStore(RemoteSettings(protocol='sftp', host='h'))
        store.connect()

        store.put(local, 'backup.zip')

        sftp.open.assert_called_once_with('backup.zip', 'wb')
        remote_file.write.assert_called_once_with(b'payload')

    def test_resumable_put_appends_from_offset(self, mock_ssh_client, tmp_path):
        local = tmp_path / 'backup.zip'
        local.write_bytes(b'payload')
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        remote_file = sftp.open.return_value.__enter__.return_value
        store = SFTPStore(RemoteSettings(protocol='sftp', host='h'))
        store.connect()

        store.resumable_put(local, 'backup.zip', 3)

        sftp.open.assert_called_once_with('backup.zip', 'ab')
        remote_file.write.assert_called_once_with(b'load')

    def test_size_missing_returns_none(self, mock_ssh_client):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        sftp.stat.side_effect = FileNotFoundError()
        store = SFTPStore(RemoteSettings(protocol='sftp', host='h'))
        store.connect()

        assert store.size('backup.zip') is None

    def test_listing_skips_directories(self, mock_ssh_client):
        sftp = mock_ssh_client.return_value.open_sftp.return_value
        directory = MagicMock(filename='old', st_mode=0o040755)
        archive = MagicMock(filename='backup-2024-01-15-10-30.zip', st_mode=0o100644)
        sftp.listdir_attr.return_value = [directory, archive]
        store = SFTPStore(RemoteSettings(protocol='sftp', host='h'))
        store.connect()

        assert [entry.name for entry in store.listing()] == ['backup-2024-01-15-10-30.zip']


class TestS3Store:
    """Test S3Store against moto."""

    @mock_aws
    def test_put_size_listing_delete(self, tmp_path):
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        local = tmp_path / 'backup-2024-01-15-10-30.zip'
        local.write_bytes(b'archive data' * 100)

        store = S3Store(S3_SETTINGS)
        store.connect()
        store.ensure_directory()
        store.put(local, local.name)

        assert store.remote_path(local.name) == f'backups/{local.name}'
        assert store.size(local.name) == 1200
        assert [entry.name for entry in store.listing()] == [local.name]
        assert isinstance(store.modified_time(local.name), datetime)
        assert store.modified_time(local.name).tzinfo is None

        store.delete(local.name)

        assert store.size(local.name) is None
        assert store.listing() == []

    @mock_aws
    def test_resumable_put_uses_multipart(self, tmp_path):
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        local = tmp_path / 'backup.zip'
        local.write_bytes(b'z' * 2048)

        store = S3Store(S3_SETTINGS)
        store.connect()
        store.resumable_put(local, 'backup.zip', offset=1024)

        assert store.supports_resume is False
        assert s3.Object('test-bucket', 'backups/backup.zip').content_length == 2048

    @mock_aws
    def test_missing_bucket_raises(self):
        store = S3Store(S3_SETTINGS)
        store.connect()

        with pytest.raises(StorageError):
            store.ensure_directory()


class TestLocalDirectory:
    """Test LocalDirectory as a retention location."""

    def test_listing_size_and_delete(self, tmp_path):
        (tmp_path / 'backup-2024-01-15-10-30.zip').write_bytes(b'abc')
        (tmp_path / 'subdir').mkdir()
        os.utime(tmp_path / 'backup-2024-01-15-10-30.zip', (1_700_000_000, 1_700_000_000))
        location = LocalDirectory(tmp_path)

        assert [entry.name for entry in location.listing()] == ['backup-2024-01-15-10-30.zip']
        assert location.size('backup-2024-01-15-10-30.zip') == 3
        assert location.modified_time('backup-2024-01-15-10-30.zip') == datetime.fromtimestamp(1_700_000_000)

        location.delete('backup-2024-01-15-10-30.zip')

        assert location.listing() == []

    def test_delete_missing_raises(self, tmp_path):
        with pytest.raises(StorageError):
            LocalDirectory(tmp_path).delete('nothing.zip')


class TestHelpers:
    """Test module-level helpers."""

    def test_parse_listing_name(self):
        assert parse_listing_name('-rw-r--r-- 1 u g 10 Jan 15 10:30 my file.zip') == 'my file.zip'
        assert parse_listing_name('drwxr-xr-x 2 u g 4096 Jan 15 10:30 dir') is None
        assert parse_listing_name('garbage') is None

    def test_create_store(self):
        assert isinstance(create_store(RemoteSettings(protocol='ftp')), FTPStore)
        assert isinstance(create_store(RemoteSettings(protocol='ftps')), FTPStore)
        assert isinstance(create_store(RemoteSettings(protocol='sftp')), SFTPStore)
        assert isinstance(create_store(RemoteSettings(protocol='s3', bucket='b')), S3Store)

        with pytest.raises(ValueError):
            create_store(RemoteSettings(protocol='gopher'))
