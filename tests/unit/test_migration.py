"""
Unit tests for the migration push (wpfleet/backup/migration.py).

SSH is mocked; no network connection is made.
"""

import stat
from unittest.mock import MagicMock

import paramiko
import pytest

from wpfleet.backup.errors import MigrationFailed
from wpfleet.backup.migration import MigrationTransport


@pytest.fixture
def migrate_root(tmp_path):
    root = tmp_path / 'wp-migrate'
    (root / 'shop.example').mkdir(parents=True)
    (root / 'blog.example').mkdir()
    (root / 'shop.example' / 'shop.example-db-20250603-033000-migrate.sql.gz').write_bytes(b'db')
    (root / 'shop.example' / 'shop.example-files-20250603-033000-migrate.tar.gz').write_bytes(b'files')
    (root / 'blog.example' / 'blog.example-db-20250603-033000-migrate.sql.gz').write_bytes(b'db')
    return root


def sftp_of(mock_ssh_client):
    return mock_ssh_client.return_value.open_sftp.return_value


def directory_attrs():
    attrs = MagicMock()
    attrs.st_mode = stat.S_IFDIR | 0o755
    return attrs


class TestMigrationTransport:
    """Test MigrationTransport.push."""

    def test_push_copies_tree(self, mock_ssh_client, migrate_root):
        sftp = sftp_of(mock_ssh_client)
        sftp.stat.side_effect = FileNotFoundError
        sftp.put.return_value = MagicMock(st_size=10)

        result = MigrationTransport(username='root').push(str(migrate_root), 'new.example.net', 2222, '/root/wp-migrate')

        connect_kwargs = mock_ssh_client.return_value.connect.call_args[1]
        assert connect_kwargs['hostname'] == 'new.example.net'
        assert connect_kwargs['port'] == 2222
        assert connect_kwargs['username'] == 'root'

        assert result.files == [
            'blog.example/blog.example-db-20250603-033000-migrate.sql.gz',
            'shop.example/shop.example-db-20250603-033000-migrate.sql.gz',
            'shop.example/shop.example-files-20250603-033000-migrate.tar.gz',
        ]
        assert result.bytes_sent == 30

        remote_files = [c[0][1] for c in sftp.put.call_args_list]
        assert '/root/wp-migrate/shop.example/shop.example-db-20250603-033000-migrate.sql.gz' in remote_files

        created = [c[0][0] for c in sftp.mkdir.call_args_list]
        assert created[:2] == ['/root', '/root/wp-migrate']
        assert '/root/wp-migrate/shop.example' in created

        # Connections are always closed
        sftp.close.assert_called_once()
        mock_ssh_client.return_value.close.assert_called_once()

    def test_existing_remote_directories_reused(self, mock_ssh_client, migrate_root):
        sftp = sftp_of(mock_ssh_client)
        sftp.stat.return_value = directory_attrs()
        sftp.put.return_value = MagicMock(st_size=1)

        MigrationTransport().push(str(migrate_root), 'new.example.net')

        sftp.mkdir.assert_not_called()

    def test_remote_path_is_a_file(self, mock_ssh_client, migrate_root):
        sftp = sftp_of(mock_ssh_client)
        attrs = MagicMock()
        attrs.st_mode = stat.S_IFREG | 0o644
        sftp.stat.return_value = attrs

        with pytest.raises(MigrationFailed, match='not a directory'):
            MigrationTransport().push(str(migrate_root), 'new.example.net')

    def test_unreachable_host(self, mock_ssh_client, migrate_root):
        mock_ssh_client.return_value.connect.side_effect = OSError('No route to host')

        with pytest.raises(MigrationFailed, match='not reachable'):
            MigrationTransport().push(str(migrate_root), 'new.example.net')

        sftp_of(mock_ssh_client).put.assert_not_called()

    def test_authentication_failure(self, mock_ssh_client, migrate_root):
        mock_ssh_client.return_value.connect.side_effect = paramiko.AuthenticationException('denied')

        with pytest.raises(MigrationFailed, match='authentication'):
            MigrationTransport().push(str(migrate_root), 'new.example.net')

    def test_partial_transfer_reported(self, mock_ssh_client, migrate_root):
        sftp = sftp_of(mock_ssh_client)
        sftp.stat.return_value = directory_attrs()
        sftp.put.side_effect = [MagicMock(st_size=1), IOError('size mismatch')]

        with pytest.raises(MigrationFailed, match='after 1 file'):
            MigrationTransport().push(str(migrate_root), 'new.example.net')

        mock_ssh_client.return_value.close.assert_called_once()

    def test_missing_local_root(self, mock_ssh_client, tmp_path):
        with pytest.raises(MigrationFailed, match='Nothing to push'):
            MigrationTransport().push(str(tmp_path / 'missing'), 'new.example.net')

        mock_ssh_client.assert_not_called()

    def test_missing_key_file(self, mock_ssh_client, migrate_root, tmp_path):
        transport = MigrationTransport(key_file=str(tmp_path / 'id_missing'))

        with pytest.raises(MigrationFailed, match='Private key not found'):
            transport.push(str(migrate_root), 'new.example.net')

    def test_password_auth(self, mock_ssh_client, migrate_root):
        sftp = sftp_of(mock_ssh_client)
        sftp.stat.return_value = directory_attrs()
        sftp.put.return_value = MagicMock(st_size=1)

        MigrationTransport(password='secret').push(str(migrate_root), 'new.example.net')

        assert mock_ssh_client.return_value.connect.call_args[1]['password'] == 'secret'

    def test_push_result_to_dict(self, mock_ssh_client, migrate_root):
        sftp = sftp_of(mock_ssh_client)
        sftp.stat.return_value = directory_attrs()
        sftp.put.return_value = MagicMock(st_size=2)

        result = MigrationTransport().push(str(migrate_root), 'new.example.net')
        data = result.to_dict()

        assert data['host'] == 'new.example.net'
        assert data['port'] == 22
        assert data['remote_path'] == '/root/wp-migrate'
        assert len(data['files']) == 3
        assert data['bytes_sent'] == 6
