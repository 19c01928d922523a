"""
Storage locations for backup archives.

Supports:
- FTPStore: Upload over FTP or explicit FTPS (ftplib)
- SFTPStore: Upload over SSH (paramiko)
- S3Store: Upload to an S3 bucket (boto3)
- LocalDirectory: The local backup directory, for retention only

Remote stores share one capability set so the transfer client and the
retention manager do not care which protocol is behind them.
"""

import ftplib
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from hostbackup.context import RemoteSettings


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
S3_PART_SIZE = 10 * 1024 * 1024

CancelCheck = Optional[Callable[[], None]]


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class TransferCancelled(StorageError):
    """Raised from a cancellation check to stop an upload between chunks."""
    pass


@dataclass(frozen=True)
class ListingEntry:
    """A file name at a location plus the raw listing line, if the protocol has one."""
    name: str
    line: str = ''


class StorageLocation(ABC):
    """A place where archives accumulate and can be pruned."""

    description = ''

    @abstractmethod
    def listing(self) -> List[ListingEntry]:
        pass

    @abstractmethod
    def size(self, name: str) -> Optional[int]:
        pass

    @abstractmethod
    def modified_time(self, name: str) -> Optional[datetime]:
        pass

    @abstractmethod
    def delete(self, name: str):
        pass


class RemoteStore(StorageLocation):
    """
    Off-host destination for archives.

    Calls other than connect() operate inside the configured remote
    directory once ensure_directory() has run.
    """

    supports_resume = True

    def __init__(self, settings: RemoteSettings):
        self.settings = settings

    @property
    def directory(self) -> str:
        return self.settings.directory or '/'

    def remote_path(self, name: str) -> str:
        return f"{self.directory.rstrip('/')}/{name}"

    @abstractmethod
    def connect(self):
        pass

    @abstractmethod
    def ensure_directory(self):
        pass

    @abstractmethod
    def put(self, local_path: Path, name: str, cancel_check: CancelCheck = None):
        pass

    @abstractmethod
    def resumable_put(self, local_path: Path, name: str, offset: int, cancel_check: CancelCheck = None):
        pass

    @abstractmethod
    def close(self):
        pass

    def abort(self):
        """Drop the connection without a protocol goodbye; used to unblock a stalled upload."""
        self.close()

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def parse_listing_name(line: str) -> Optional[str]:
    """
    Extract the file name from a Unix-style LIST line.

    Format: perms links owner group size month day time-or-year name
    """
    parts = line.split(None, 8)
    if len(parts) < 9 or parts[0].startswith('d'):
        return None
    return parts[8]


class FTPStore(RemoteStore):
    """
    Remote store over FTP, or FTPS when the protocol is 'ftps'.
    """

    def __init__(self, settings: RemoteSettings, timeout: int = 60):
        """
        Initialize FTP store.

        Args:
            settings: Remote connection settings
            timeout: Socket timeout in seconds
        """
        super().__init__(settings)
        self.timeout = timeout
        self.client: Optional[ftplib.FTP] = None
        scheme = 'ftps' if settings.use_tls else 'ftp'
        self.description = f"{scheme}://{settings.host}{self.directory}"

    def connect(self):
        """
        Connect and log in.

        Raises:
            StorageError: If connection or login fails
        """
        ftp_class = ftplib.FTP_TLS if self.settings.use_tls else ftplib.FTP
        client = ftp_class(timeout=self.timeout)

        try:
            client.connect(host=self.settings.host, port=self.settings.port or 21)
            client.login(user=self.settings.username, passwd=self.settings.password)
            if isinstance(client, ftplib.FTP_TLS):
                client.prot_p()
            client.set_pasv(self.settings.passive)
        except ftplib.all_errors as e:
            client.close()
            raise StorageError(f"FTP connection to {self.settings.host} failed: {e}")

        self.client = client
        logger.info(f"Connected to FTP server {self.settings.host} (passive: {self.settings.passive})")

    def ensure_directory(self):
        """Change into the remote directory, creating missing components."""
        try:
            if self.directory.startswith('/'):
                self.client.cwd('/')
            for component in [part for part in self.directory.split('/') if part]:
                try:
                    self.client.cwd(component)
                except ftplib.error_perm:
                    self.client.mkd(component)
                    self.client.cwd(component)
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to create remote directory {self.directory}: {e}")

    def listing(self) -> List[ListingEntry]:
        lines: List[str] = []
        try:
            self.client.retrlines('LIST', lines.append)
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to list remote directory: {e}")

        entries = []
        for line in lines:
            name = parse_listing_name(line)
            if name is not None:
                entries.append(ListingEntry(name, line))
        return entries

    def size(self, name: str) -> Optional[int]:
        try:
            # SIZE is only reliable in binary mode
            self.client.voidcmd('TYPE I')
            return self.client.size(name)
        except ftplib.error_perm:
            return None
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to query remote size of {name}: {e}")

    def modified_time(self, name: str) -> Optional[datetime]:
        try:
            response = self.client.voidcmd(f"MDTM {name}")
        except ftplib.error_perm:
            return None
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to query modification time of {name}: {e}")

        # Reply format: "213 YYYYMMDDHHMMSS[.sss]"
        try:
            return datetime.strptime(response[4:18], '%Y%m%d%H%M%S')
        except ValueError:
            return None

    def put(self, local_path: Path, name: str, cancel_check: CancelCheck = None):
        self._store(local_path, name, 0, cancel_check)

    def resumable_put(self, local_path: Path, name: str, offset: int, cancel_check: CancelCheck = None):
        self._store(local_path, name, offset, cancel_check)

    def _store(self, local_path: Path, name: str, offset: int, cancel_check: CancelCheck):
        def on_block(_block):
            if cancel_check:
                cancel_check()

        try:
            with open(local_path, 'rb') as f:
                if offset:
                    f.seek(offset)
                self.client.storbinary(
                    f"STOR {name}", f, blocksize=CHUNK_SIZE, callback=on_block, rest=offset or None
                )
        except TransferCancelled:
            raise
        except ftplib.all_errors as e:
            raise StorageError(f"FTP upload of {name} failed: {e}")

    def delete(self, name: str):
        try:
            self.client.delete(name)
        except ftplib.all_errors as e:
            raise StorageError(f"Failed to delete remote file {name}: {e}")

    def close(self):
        if self.client is None:
            return
        try:
            self.client.quit()
        except ftplib.all_errors:
            self.client.close()
        self.client = None

    def abort(self):
        if self.client is not None:
            self.client.close()
            self.client = None


class SFTPStore(RemoteStore):
    """
    Remote store over SFTP.
    """

    def __init__(self, settings: RemoteSettings, timeout: int = 30):
        super().__init__(settings)
        self.timeout = timeout
        self.ssh_client: Optional[SSHClient] = None
        self.sftp_client = None
        self.description = f"sftp://{settings.host}{self.directory}"

    def connect(self):
        """
        Establish SSH connection and open an SFTP session.

        Raises:
            StorageError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.settings.host,
                'port': self.settings.port or 22,
                'username': self.settings.username,
                'timeout': self.timeout
            }
            if self.settings.password:
                connect_kwargs['password'] = self.settings.password

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            # connect() only bounds the handshake; reads and writes need their own limit
            self.sftp_client.get_channel().settimeout(self.timeout)

        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise StorageError(f"SSH connection failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to connect to {self.settings.host}: {e}")

        logger.info(f"Connected to SFTP server {self.settings.host}")

    def ensure_directory(self):
        current = '/' if self.directory.startswith('/') else ''
        try:
            for component in [part for part in self.directory.split('/') if part]:
                current = f"{current.rstrip('/')}/{component}" if current else component
                try:
                    self.sftp_client.stat(current)
                except FileNotFoundError:
                    self.sftp_client.mkdir(current)
            self.sftp_client.chdir(self.directory)
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to create remote directory {self.directory}: {e}")

    def listing(self) -> List[ListingEntry]:
        try:
            attributes = self.sftp_client.listdir_attr('.')
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to list remote directory: {e}")

        # Directories have S_IFDIR set
        return [
            ListingEntry(item.filename, str(item))
            for item in attributes
            if not (item.st_mode or 0) & 0o040000
        ]

    def size(self, name: str) -> Optional[int]:
        try:
            return self.sftp_client.stat(name).st_size
        except FileNotFoundError:
            return None
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to query remote size of {name}: {e}")

    def modified_time(self, name: str) -> Optional[datetime]:
        try:
            mtime = self.sftp_client.stat(name).st_mtime
        except FileNotFoundError:
            return None
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to query modification time of {name}: {e}")
        return datetime.fromtimestamp(mtime) if mtime is not None else None

    def put(self, local_path: Path, name: str, cancel_check: CancelCheck = None):
        self._store(local_path, name, 0, 'wb', cancel_check)

    def resumable_put(self, local_path: Path, name: str, offset: int, cancel_check: CancelCheck = None):
        self._store(local_path, name, offset, 'ab' if offset else 'wb', cancel_check)

    def _store(self, local_path: Path, name: str, offset: int, mode: str, cancel_check: CancelCheck):
        try:
            with open(local_path, 'rb') as src, self.sftp_client.open(name, mode) as dest:
                dest.set_pipelined(True)
                src.seek(offset)
                while True:
                    if cancel_check:
                        cancel_check()
                    chunk = src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    dest.write(chunk)
        except TransferCancelled:
            raise
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"SFTP upload of {name} failed: {e}")

    def delete(self, name: str):
        try:
            self.sftp_client.remove(name)
        except (OSError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to delete remote file {name}: {e}")

    def close(self):
        """Close SSH/SFTP connections."""
        for client in (self.sftp_client, self.ssh_client):
            if client is None:
                continue
            try:
                client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Error closing SFTP connection: {e}")
        self.sftp_client = None
        self.ssh_client = None


class S3Store(RemoteStore):
    """
    Remote store in an S3 bucket.

    Objects are stored as {directory}/{filename}. S3 cannot append to an
    object, so an interrupted upload is always restarted from zero.
    """

    supports_resume = False

    def __init__(self, settings: RemoteSettings):
        super().__init__(settings)
        self.bucket_name = settings.bucket
        self.prefix = self.directory.strip('/')
        self.s3_client = None
        self.description = f"s3://{self.bucket_name}/{self.prefix}"

    def key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    def remote_path(self, name: str) -> str:
        return self.key(name)

    def connect(self):
        client_kwargs = {'region_name': self.settings.region}
        if self.settings.username:
            client_kwargs['aws_access_key_id'] = self.settings.username
            client_kwargs['aws_secret_access_key'] = self.settings.password
        if self.settings.host:
            host = self.settings.host
            client_kwargs['endpoint_url'] = host if '://' in host else f"https://{host}"

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def ensure_directory(self):
        """S3 has no directories; check that the bucket is reachable instead."""
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")

    def listing(self) -> List[ListingEntry]:
        prefix = f"{self.prefix}/" if self.prefix else ''
        entries = []
        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(prefix):]
                    if name and '/' not in name:
                        entries.append(ListingEntry(name))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")
        return entries

    def _head(self, name: str) -> Optional[dict]:
        try:
            return self.s3_client.head_object(Bucket=self.bucket_name, Key=self.key(name))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code in ('404', 'NoSuchKey', 'NotFound'):
                return None
            raise StorageError(f"S3 head failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to query S3 object {name}: {e}")

    def size(self, name: str) -> Optional[int]:
        head = self._head(name)
        return head['ContentLength'] if head else None

    def modified_time(self, name: str) -> Optional[datetime]:
        head = self._head(name)
        if not head:
            return None
        # Compared with naive local timestamps elsewhere
        return head['LastModified'].astimezone().replace(tzinfo=None)

    def put(self, local_path: Path, name: str, cancel_check: CancelCheck = None):
        if cancel_check:
            cancel_check()
        try:
            with open(local_path, 'rb') as f:
                self.s3_client.put_object(Bucket=self.bucket_name, Key=self.key(name), Body=f)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise StorageError(f"S3 upload failed: {e}")

    def resumable_put(self, local_path: Path, name: str, offset: int, cancel_check: CancelCheck = None):
        """
        Upload in parts with a cancellation check before each part.

        The offset is ignored: the object is always rewritten in full.
        """
        key = self.key(name)
        try:
            upload_id = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)['UploadId']
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"S3 multipart upload could not start: {e}")

        parts = []
        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                while True:
                    if cancel_check:
                        cancel_check()

                    data = f.read(S3_PART_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except Exception as e:
            try:
                self.s3_client.abort_multipart_upload(Bucket=self.bucket_name, Key=key, UploadId=upload_id)
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            if isinstance(e, StorageError):
                raise
            raise StorageError(f"S3 multipart upload failed: {e}")

    def delete(self, name: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=self.key(name))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def close(self):
        self.s3_client = None


class LocalDirectory(StorageLocation):
    """
    The local backup directory as a retention location.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.description = str(self.path)

    def listing(self) -> List[ListingEntry]:
        try:
            with os.scandir(self.path) as scanner:
                return [ListingEntry(entry.name) for entry in scanner if entry.is_file(follow_symlinks=False)]
        except OSError as e:
            raise StorageError(f"Failed to list local directory {self.path}: {e}")

    def size(self, name: str) -> Optional[int]:
        try:
            return (self.path / name).stat().st_size
        except OSError:
            return None

    def modified_time(self, name: str) -> Optional[datetime]:
        try:
            return datetime.fromtimestamp((self.path / name).stat().st_mtime)
        except OSError:
            return None

    def delete(self, name: str):
        try:
            (self.path / name).unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {self.path / name}: {e}")
        except OSError as e:
            raise StorageError(f"Failed to delete local file: {e}")


def create_store(settings: RemoteSettings) -> RemoteStore:
    """
    Factory function to create the remote store for a protocol.

    Args:
        settings: Remote settings; protocol is 'ftp', 'ftps', 'sftp' or 's3'

    Returns:
        RemoteStore instance (not yet connected)

    Raises:
        ValueError: If the protocol is unknown
    """
    if settings.protocol in ('ftp', 'ftps'):
        return FTPStore(settings)
    elif settings.protocol == 'sftp':
        return SFTPStore(settings)
    elif settings.protocol == 's3':
        return S3Store(settings)
    else:
        raise ValueError(f"Invalid remote protocol: {settings.protocol}")
