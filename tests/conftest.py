"""
Shared pytest fixtures for wpfleet tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- A sites root with WordPress installations
- In-memory fakes for the remote store and the database engine
- Mock fixtures for external services (S3, SSH, scheduler)
"""

import gzip
import os
from fnmatch import fnmatch
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from wpfleet import create_app, db as _db
from wpfleet.backup.database import DatabaseDumper, DatabaseProvisioner
from wpfleet.backup.errors import (
    CommandError,
    CredentialsUnavailable,
    DeleteFailed,
    DownloadFailed,
    DumpFailed,
    StorageError,
    UploadFailed,
)
from wpfleet.backup.sites import Site
from wpfleet.backup.storage import RemoteStore


WP_CONFIG_TEMPLATE = """<?php
/** WordPress configuration */
define( 'DB_NAME', '{name}' );
define( 'DB_USER', '{user}' );
define( 'DB_PASSWORD', '{password}' );
define( 'DB_HOST', 'localhost' );
$table_prefix = 'wp_';
"""


def write_site(sites_root, domain, name='wp_db', user='wp_user', password='wp_pass', files=None):
    """
    Create /<sites_root>/<domain>/public_html with a wp-config.php and some files.

    Returns:
        Path of the site root (public_html)
    """
    root = Path(sites_root) / domain / 'public_html'
    root.mkdir(parents=True, exist_ok=True)
    (root / 'wp-config.php').write_text(WP_CONFIG_TEMPLATE.format(name=name, user=user, password=password))
    for relative, content in (files or {'index.php': '<?php // index', 'wp-content/uploads/a.txt': 'upload'}).items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


class FakeStore(RemoteStore):
    """In-memory remote store with failure injection."""

    def __init__(self):
        self.objects = {}
        self.fail_upload = False
        self.upload_limit = None
        self.fail_list = False
        self.fail_copy_to = set()
        self.fail_delete = set()
        self.calls = []

    def put(self, prefix, name, data=b'data'):
        self.objects.setdefault(prefix, {})[name] = data

    def names(self, prefix):
        return sorted(self.objects.get(prefix, {}))

    def upload(self, local_dir, prefix):
        self.calls.append(('upload', prefix))
        if self.fail_upload:
            raise UploadFailed(f"upload to {prefix} refused")
        uploaded = []
        for path in sorted(Path(local_dir).iterdir()):
            if path.is_file():
                if self.upload_limit is not None and len(uploaded) >= self.upload_limit:
                    raise UploadFailed(f"upload to {prefix} interrupted after {len(uploaded)} file(s)")
                self.put(prefix, path.name, path.read_bytes())
                uploaded.append(path.name)
        return uploaded

    def list(self, prefix, pattern=None):
        self.calls.append(('list', prefix))
        if self.fail_list:
            raise StorageError("listing refused")
        names = self.names(prefix)
        if pattern:
            names = [n for n in names if fnmatch(n, pattern)]
        return names

    def delete(self, prefix, name):
        self.calls.append(('delete', prefix, name))
        if name in self.fail_delete:
            raise DeleteFailed(f"delete of {name} refused")
        try:
            del self.objects[prefix][name]
        except KeyError:
            raise DeleteFailed(f"Not found: {name}")

    def download(self, prefix, name, local_dir):
        self.calls.append(('download', prefix, name))
        try:
            data = self.objects[prefix][name]
        except KeyError:
            raise DownloadFailed(f"Not found: {name}")
        path = os.path.join(local_dir, name)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def copy(self, prefix, source_name, dest_name):
        self.calls.append(('copy', prefix, source_name, dest_name))
        if dest_name in self.fail_copy_to:
            raise StorageError(f"copy to {dest_name} refused")
        try:
            data = self.objects[prefix][source_name]
        except KeyError:
            raise StorageError(f"Not found: {source_name}")
        self.put(prefix, dest_name, data)

    def list_prefixes(self):
        return sorted(p for p, names in self.objects.items() if names)


class FakeDatabase(DatabaseDumper, DatabaseProvisioner):
    """Database engine stand-in: dumps and imports plain SQL text."""

    def __init__(self):
        self.databases = {}
        self.fail_dump = set()
        self.fail_import = False
        self.credentials_available = True
        self.provisioned = []
        self.imported = {}

    def ensure_credentials(self):
        if not self.credentials_available:
            raise CredentialsUnavailable("no credentials configured")

    def dump(self, database_name, output_path, cancel_event=None):
        self.ensure_credentials()
        if database_name in self.fail_dump:
            raise DumpFailed(f"mysqldump of {database_name} failed")
        content = self.databases.get(database_name, f"-- dump of {database_name}\n")
        with gzip.open(output_path, 'wb') as f:
            f.write(content.encode('utf-8'))

    def provision(self, credentials):
        self.provisioned.append(credentials)

    def import_dump(self, database_name, dump_path):
        if self.fail_import:
            raise CommandError("mysql exited with status 1: ERROR 1064", returncode=1)
        with gzip.open(dump_path, 'rb') as f:
            self.imported[database_name] = f.read().decode('utf-8')


@pytest.fixture
def sites_root(tmp_path):
    """
    Sites root with two valid sites and one without DB_NAME.

    - shop.example  (shop_db)
    - blog.example  (blog_db)
    - broken.example (wp-config.php without DB_NAME)
    """
    root = tmp_path / 'home'
    write_site(root, 'shop.example', name='shop_db', user='shop_user', password='shop_pass')
    write_site(root, 'blog.example', name='blog_db', user='blog_user', password='blog_pass')
    broken = root / 'broken.example' / 'public_html'
    broken.mkdir(parents=True)
    (broken / 'wp-config.php').write_text("<?php\n// DB settings live elsewhere\n")
    return root


@pytest.fixture
def site_factory():
    """Returns write_site(sites_root, domain, name, user, password, files)."""
    return write_site


@pytest.fixture
def site(sites_root):
    """The shop.example site."""
    root = sites_root / 'shop.example' / 'public_html'
    return Site(
        domain='shop.example',
        root_path=root,
        database_name='shop_db',
        database_user='shop_user',
        database_password='shop_pass',
    )


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_database():
    return FakeDatabase()


@pytest.fixture(scope='function')
def app(tmp_path, sites_root):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite and a local directory as the remote store.
    """
    data_dir = tmp_path / 'data'

    app = create_app('testing', overrides={
        'SITES_ROOT': str(sites_root),
        'REMOTE_BACKEND': 'local',
        'REMOTE_ROOT': str(data_dir / 'remote'),
        'TEMP_DIR': str(data_dir / 'temp'),
        'MIGRATE_ROOT': str(data_dir / 'wp-migrate'),
        'LOG_DIR': str(data_dir / 'logs'),
        'MYSQL_DEFAULTS_FILE': str(data_dir / 'missing.cnf'),
        'RESTORE_TARGET_TEMPLATE': str(tmp_path / 'restored' / '{domain}' / 'public_html'),
    })

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
def patched_database(fake_database):
    """Make the service layer use the fake database engine."""
    with patch('wpfleet.backup.service.build_database', return_value=fake_database):
        yield fake_database


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
    Mock paramiko SSHClient for SFTP push testing.

    Returns the mocked class; the SFTP client is
    mock_ssh_client.return_value.open_sftp.return_value.
    """
    with patch('wpfleet.backup.migration.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('wpfleet.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
