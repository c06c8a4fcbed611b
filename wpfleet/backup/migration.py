"""
Server-to-server migration push over SSH/SFTP.

Copies a local migration root (one directory per domain, holding migrate
class artifacts) to a directory on another host. The transfer is additive:
remote files that are not part of the push are left alone.
"""

import logging
import os
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from .errors import MigrationFailed

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    host: str
    port: int
    remote_path: str
    files: List[str] = field(default_factory=list)
    bytes_sent: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            'host': self.host,
            'port': self.port,
            'remote_path': self.remote_path,
            'files': list(self.files),
            'bytes_sent': self.bytes_sent,
        }


class MigrationTransport:
    """
    Pushes a local backup tree to a remote host via SFTP.
    """

    def __init__(
        self,
        username: str = 'root',
        key_file: Optional[str] = None,
        password: Optional[str] = None,
        connect_timeout: float = 30,
    ):
        """
        Args:
            username: SSH username on the new server
            key_file: Private key file (the SSH agent and default keys are
                tried when neither key_file nor password is given)
            password: SSH password
            connect_timeout: Seconds allowed for the connection and the
                reachability round trip
        """
        self.username = username
        self.key_file = key_file
        self.password = password
        self.connect_timeout = connect_timeout

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self, host: str, port: int):
        """
        Open the SSH session and verify the host answers an SFTP round trip.

        Raises:
            MigrationFailed: If the host is unreachable or rejects us
        """
        try:
            self.ssh_client = SSHClient()
            self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': host,
                'port': port,
                'username': self.username,
                'timeout': self.connect_timeout,
                'banner_timeout': self.connect_timeout,
                'auth_timeout': self.connect_timeout,
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.key_file:
                key_path = Path(self.key_file).expanduser()
                if not key_path.exists():
                    raise MigrationFailed(f"Private key not found: {self.key_file}")
                connect_kwargs['key_filename'] = str(key_path)

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()
            self.sftp_client.get_channel().settimeout(self.connect_timeout)
            self.sftp_client.normalize('.')

        except MigrationFailed:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise MigrationFailed(f"SSH authentication to {host}:{port} failed: {e}")
        except paramiko.SSHException as e:
            self.close()
            raise MigrationFailed(f"SSH connection to {host}:{port} failed: {e}")
        except OSError as e:
            self.close()
            raise MigrationFailed(f"Host {host}:{port} is not reachable: {e}")

    def _makedirs(self, remote_dir: str):
        """mkdir -p on the remote side."""
        path = ''
        for part in remote_dir.split('/'):
            if not part:
                path = path or '/'
                continue
            path = f"{path.rstrip('/')}/{part}" if path else part
            try:
                attrs = self.sftp_client.stat(path)
            except FileNotFoundError:
                self.sftp_client.mkdir(path)
                continue
            if not stat.S_ISDIR(attrs.st_mode):
                raise MigrationFailed(f"Remote path exists and is not a directory: {path}")

    def push(self, local_backup_root: str, host: str, port: int = 22, remote_path: str = '/root/wp-migrate') -> PushResult:
        """
        Copy local_backup_root to remote_path on host, preserving relative paths.

        Args:
            local_backup_root: Local directory to push (e.g. /root/wp-migrate)
            host: New server hostname or IP
            port: SSH port
            remote_path: Destination directory on the new server

        Returns:
            PushResult listing the transferred files

        Raises:
            MigrationFailed: If the host is unreachable or any file fails to transfer
        """
        root = Path(local_backup_root)
        if not root.is_dir():
            raise MigrationFailed(f"Nothing to push: {local_backup_root} does not exist")

        result = PushResult(host=host, port=port, remote_path=remote_path)
        remote_root = remote_path.rstrip('/') or '/'

        logger.info(f"Checking SSH connectivity to {self.username}@{host}:{port}")
        self._connect(host, port)

        try:
            self._makedirs(remote_root)

            for dirpath, dirnames, filenames in os.walk(root):
                dirnames.sort()
                relative = Path(dirpath).relative_to(root)
                remote_dir = remote_root if str(relative) == '.' else f"{remote_root}/{relative.as_posix()}"
                self._makedirs(remote_dir)

                for name in sorted(filenames):
                    local_file = Path(dirpath) / name
                    remote_file = f"{remote_dir}/{name}"
                    # put() confirms the remote size matches after the transfer
                    attrs = self.sftp_client.put(str(local_file), remote_file)
                    result.files.append((relative / name).as_posix())
                    result.bytes_sent += attrs.st_size or 0
                    logger.debug(f"Pushed {local_file} -> {host}:{remote_file}")

        except MigrationFailed:
            raise
        except (IOError, OSError, paramiko.SSHException) as e:
            raise MigrationFailed(
                f"Push to {host}:{remote_root} failed after {len(result.files)} file(s): {e}"
            )
        finally:
            self.close()

        logger.info(f"Pushed {len(result.files)} file(s) ({result.bytes_sent} bytes) to {host}:{remote_root}")
        return result

    def close(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException) as e:
                logger.debug(f"Error closing SSH connection: {e}")
            self.ssh_client = None
