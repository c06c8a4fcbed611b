"""
Remote store backends for backup artifacts.

Layout is one flat directory per site: <root>/<domain>/<artifact filename>.

Supports:
- RcloneStore: any rclone remote (e.g. dropbox:wp-backups)
- S3Store: an S3 bucket (or S3-compatible endpoint) via boto3
- LocalStore: a plain directory (mounted storage, or the migration root)
"""

import logging
import os
import shutil
from abc import ABC, abstractmethod
from fnmatch import fnmatch
from pathlib import Path
from typing import List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .commands import run_command
from .errors import (
    CommandError,
    DeleteFailed,
    DownloadFailed,
    StorageError,
    UploadFailed,
)

logger = logging.getLogger(__name__)


class RemoteStore(ABC):
    """Path-addressable store holding one prefix (directory) per site."""

    @abstractmethod
    def upload(self, local_dir: str, prefix: str) -> List[str]:
        """
        Upload every file in local_dir into prefix.

        Returns:
            Names of the uploaded files

        Raises:
            UploadFailed: If any file did not make it to the store
        """

    @abstractmethod
    def list(self, prefix: str, pattern: Optional[str] = None) -> List[str]:
        """
        List file names directly under prefix, sorted lexicographically.

        A prefix that does not exist yet lists as empty.

        Raises:
            StorageError: If the listing fails
        """

    @abstractmethod
    def delete(self, prefix: str, name: str):
        """
        Raises:
            DeleteFailed: If the object could not be deleted
        """

    @abstractmethod
    def download(self, prefix: str, name: str, local_dir: str) -> str:
        """
        Returns:
            Local path of the downloaded file

        Raises:
            DownloadFailed: If the object could not be fetched
        """

    @abstractmethod
    def copy(self, prefix: str, source_name: str, dest_name: str):
        """
        Copy an object within a prefix, overwriting dest_name if it exists.

        Raises:
            StorageError: If the copy fails
        """

    @abstractmethod
    def list_prefixes(self) -> List[str]:
        """
        List site prefixes (domains) present in the store.

        Raises:
            StorageError: If the listing fails
        """

    def describe(self, prefix: str = '') -> str:
        return prefix


def _filter_names(names, pattern: Optional[str]) -> List[str]:
    if pattern:
        names = [n for n in names if fnmatch(n, pattern)]
    return sorted(names)


def _local_files(local_dir: str) -> List[Path]:
    files = sorted(p for p in Path(local_dir).iterdir() if p.is_file())
    if not files:
        raise UploadFailed(f"Nothing to upload in {local_dir}")
    return files


class RcloneStore(RemoteStore):
    """
    Store backed by an rclone remote, e.g. dropbox:wp-backups.
    """

    def __init__(self, root: str, binary: str = 'rclone', timeout: Optional[float] = None):
        """
        Args:
            root: Remote root, e.g. 'dropbox:wp-backups'
            binary: rclone executable
            timeout: Seconds before a single rclone call is killed
        """
        if ':' not in root:
            raise StorageError(f"rclone root must name a remote (remote:path): {root}")
        self.root = root.rstrip('/')
        self.binary = binary
        self.timeout = timeout

    def _path(self, *parts: str) -> str:
        path = self.root
        for part in parts:
            if not part:
                continue
            path = f"{path}{part}" if path.endswith(':') else f"{path}/{part}"
        return path

    def describe(self, prefix: str = '') -> str:
        return self._path(prefix)

    def _run(self, *args: str):
        return run_command([self.binary, *args], timeout=self.timeout)

    def upload(self, local_dir: str, prefix: str) -> List[str]:
        files = _local_files(local_dir)
        try:
            self._run('copy', local_dir, self._path(prefix))
        except CommandError as e:
            raise UploadFailed(f"rclone upload to {self._path(prefix)} failed: {e}")
        return [f.name for f in files]

    def list(self, prefix: str, pattern: Optional[str] = None) -> List[str]:
        try:
            result = run_command(
                [self.binary, 'lsf', '--files-only', '--format', 'p', self._path(prefix)],
                timeout=self.timeout,
                check=False,
            )
        except CommandError as e:
            raise StorageError(f"rclone listing of {self._path(prefix)} failed: {e}")

        # Exit status 3 is "directory not found": a site with no backups yet
        if result.returncode == 3:
            return []
        if result.returncode != 0:
            raise StorageError(
                f"rclone listing of {self._path(prefix)} failed (status {result.returncode}): "
                f"{result.stderr.strip()}"
            )

        names = [line.strip() for line in result.stdout.decode('utf-8', errors='replace').splitlines()]
        return _filter_names([n for n in names if n], pattern)

    def delete(self, prefix: str, name: str):
        try:
            self._run('deletefile', self._path(prefix, name))
        except CommandError as e:
            raise DeleteFailed(f"rclone delete of {self._path(prefix, name)} failed: {e}")

    def download(self, prefix: str, name: str, local_dir: str) -> str:
        local_path = os.path.join(local_dir, name)
        try:
            self._run('copyto', self._path(prefix, name), local_path)
        except CommandError as e:
            raise DownloadFailed(f"rclone download of {self._path(prefix, name)} failed: {e}")
        if not os.path.isfile(local_path):
            raise DownloadFailed(f"rclone reported success but {name} was not downloaded")
        return local_path

    def copy(self, prefix: str, source_name: str, dest_name: str):
        try:
            self._run('copyto', self._path(prefix, source_name), self._path(prefix, dest_name))
        except CommandError as e:
            raise StorageError(f"rclone copy {source_name} -> {dest_name} failed: {e}")

    def list_prefixes(self) -> List[str]:
        try:
            result = self._run('lsf', '--dirs-only', self.root)
        except CommandError as e:
            raise StorageError(f"rclone listing of {self.root} failed: {e}")
        names = result.stdout.decode('utf-8', errors='replace').splitlines()
        return sorted(n.strip().rstrip('/') for n in names if n.strip())


class S3Store(RemoteStore):
    """
    Store backed by an S3 bucket.

    Keys follow the same flat layout: {root}/{domain}/{filename}.
    """

    # Use multipart upload for files larger than 100MB
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(
        self,
        bucket_name: str,
        root: str = '',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
    ):
        """
        Initialize S3 store.

        Args:
            bucket_name: S3 bucket name
            root: Key prefix under which site prefixes live
            access_key: AWS access key ID (default credential chain when omitted)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            endpoint_url: Endpoint for S3-compatible services
        """
        self.bucket_name = bucket_name
        self.root = root.strip('/')
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def _key(self, prefix: str, name: str = '') -> str:
        parts = [p for p in (self.root, prefix.strip('/'), name) if p]
        key = '/'.join(parts)
        return key if name else f"{key}/"

    def describe(self, prefix: str = '') -> str:
        return f"s3://{self.bucket_name}/{self._key(prefix)}"

    def upload(self, local_dir: str, prefix: str) -> List[str]:
        uploaded = []
        for path in _local_files(local_dir):
            key = self._key(prefix, path.name)
            try:
                if path.stat().st_size > self.MULTIPART_THRESHOLD:
                    self._multipart_upload(str(path), key)
                else:
                    self._simple_upload(str(path), key)
            except ClientError as e:
                error_code = e.response.get('Error', {}).get('Code', 'Unknown')
                raise UploadFailed(f"S3 upload of {path.name} failed ({error_code}): {e}")
            except (BotoCoreError, OSError) as e:
                raise UploadFailed(f"S3 upload of {path.name} failed: {e}")
            uploaded.append(path.name)
        return uploaded

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            # A multipart upload that is never completed stays invisible;
            # abort it so the parts are not billed.
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def list(self, prefix: str, pattern: Optional[str] = None) -> List[str]:
        key_prefix = self._key(prefix)
        try:
            names = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=key_prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(key_prefix):]
                    if name and '/' not in name:
                        names.append(name)

            return _filter_names(names, pattern)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def delete(self, prefix: str, name: str):
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._key(prefix, name)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DeleteFailed(f"S3 delete of {name} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DeleteFailed(f"Failed to delete {name} from S3: {e}")

    def download(self, prefix: str, name: str, local_dir: str) -> str:
        local_path = os.path.join(local_dir, name)
        try:
            self.s3_client.download_file(self.bucket_name, self._key(prefix, name), local_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DownloadFailed(f"S3 download of {name} failed ({error_code}): {e}")
        except (BotoCoreError, OSError) as e:
            raise DownloadFailed(f"Failed to download {name} from S3: {e}")
        return local_path

    def copy(self, prefix: str, source_name: str, dest_name: str):
        try:
            # Managed copy switches to multipart for objects above 5GB
            self.s3_client.copy(
                {'Bucket': self.bucket_name, 'Key': self._key(prefix, source_name)},
                self.bucket_name,
                self._key(prefix, dest_name)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 copy {source_name} -> {dest_name} failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 copy {source_name} -> {dest_name} failed: {e}")

    def list_prefixes(self) -> List[str]:
        root_prefix = f"{self.root}/" if self.root else ''
        try:
            prefixes = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=root_prefix, Delimiter='/'):
                for common in page.get('CommonPrefixes', []):
                    prefixes.append(common['Prefix'][len(root_prefix):].rstrip('/'))

            return sorted(prefixes)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 prefixes: {e}")


class LocalStore(RemoteStore):
    """
    Store backed by a local directory: {base_path}/{domain}/{filename}.

    Writes go to a hidden temporary name first and are renamed into place,
    so a listing never shows a partially written artifact.
    """

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def describe(self, prefix: str = '') -> str:
        return str(self.base_path / prefix)

    def _copy_atomic(self, source: Path, dest: Path):
        partial = dest.with_name(f".{dest.name}.part")
        try:
            shutil.copy2(source, partial)
            os.replace(partial, dest)
        except BaseException:
            if partial.exists():
                partial.unlink()
            raise

    def upload(self, local_dir: str, prefix: str) -> List[str]:
        dest_dir = self.base_path / prefix
        uploaded = []
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            for path in _local_files(local_dir):
                self._copy_atomic(path, dest_dir / path.name)
                uploaded.append(path.name)
        except PermissionError as e:
            raise UploadFailed(f"Permission denied writing to {dest_dir}: {e}")
        except OSError as e:
            raise UploadFailed(f"Failed to store in {dest_dir}: {e}")
        return uploaded

    def list(self, prefix: str, pattern: Optional[str] = None) -> List[str]:
        prefix_dir = self.base_path / prefix
        if not prefix_dir.is_dir():
            return []
        try:
            names = [
                p.name for p in prefix_dir.iterdir()
                if p.is_file() and not p.name.startswith('.')
            ]
        except OSError as e:
            raise StorageError(f"Failed to list {prefix_dir}: {e}")
        return _filter_names(names, pattern)

    def delete(self, prefix: str, name: str):
        full_path = self.base_path / prefix / name
        try:
            full_path.unlink()
        except FileNotFoundError:
            raise DeleteFailed(f"Not found: {full_path}")
        except OSError as e:
            raise DeleteFailed(f"Failed to delete {full_path}: {e}")

    def download(self, prefix: str, name: str, local_dir: str) -> str:
        source = self.base_path / prefix / name
        dest = Path(local_dir) / name
        try:
            shutil.copy2(source, dest)
        except FileNotFoundError:
            raise DownloadFailed(f"Not found: {source}")
        except OSError as e:
            raise DownloadFailed(f"Failed to copy {source}: {e}")
        return str(dest)

    def copy(self, prefix: str, source_name: str, dest_name: str):
        prefix_dir = self.base_path / prefix
        try:
            self._copy_atomic(prefix_dir / source_name, prefix_dir / dest_name)
        except OSError as e:
            raise StorageError(f"Failed to copy {source_name} -> {dest_name}: {e}")

    def list_prefixes(self) -> List[str]:
        try:
            return sorted(p.name for p in self.base_path.iterdir() if p.is_dir())
        except OSError as e:
            raise StorageError(f"Failed to list {self.base_path}: {e}")

    def path_for(self, prefix: str, name: str = '') -> Path:
        return self.base_path / prefix / name if name else self.base_path / prefix


def create_remote_store(backend: str, root: str, **options) -> RemoteStore:
    """
    Factory function to create the configured remote store.

    Args:
        backend: 'rclone', 's3' or 'local'
        root: Remote root (rclone remote:path, S3 key prefix, or directory)
        **options: Backend specific options

    Returns:
        RemoteStore instance

    Raises:
        ValueError: If backend is invalid
    """
    if backend == 'rclone':
        return RcloneStore(root, binary=options.get('binary', 'rclone'), timeout=options.get('timeout'))
    elif backend == 's3':
        bucket = options.get('bucket_name')
        if not bucket:
            raise StorageError("S3 backend requires a bucket name")
        return S3Store(
            bucket_name=bucket,
            root=root,
            access_key=options.get('access_key'),
            secret_key=options.get('secret_key'),
            region=options.get('region') or 'us-east-1',
            endpoint_url=options.get('endpoint_url'),
        )
    elif backend == 'local':
        return LocalStore(root)
    else:
        raise ValueError(f"Invalid remote backend: {backend}")
