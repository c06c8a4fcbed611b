"""
File-tree archives for site backups.

Archives are gzip-compressed tarballs whose single top-level entry is the
site root directory's own name (e.g. public_html/), so extraction
reproduces the original directory name.
"""

import logging
import os
import tarfile
from pathlib import Path

from .errors import ArchiveFailed

logger = logging.getLogger(__name__)


def create_archive(source_path: str, output_path: str) -> str:
    """
    Pack a directory tree into a tar.gz archive.

    Args:
        source_path: Directory to archive; stored under its own basename
        output_path: Full path of the archive to write

    Returns:
        output_path

    Raises:
        ArchiveFailed: If the source is missing or archiving fails
    """
    source = Path(source_path)
    if not source.is_dir():
        raise ArchiveFailed(f"Path does not exist or is not a directory: {source_path}")

    try:
        with tarfile.open(output_path, 'w:gz') as tar:
            tar.add(str(source), arcname=source.name, recursive=True)
        return output_path
    except Exception as e:
        # Clean up partial archive on failure
        if os.path.exists(output_path):
            try:
                os.remove(output_path)
            except OSError:
                logger.warning(f"Could not remove partial archive {output_path}")
        raise ArchiveFailed(f"Failed to create archive of {source_path}: {e}")


def _check_member(member: tarfile.TarInfo, dest: Path):
    """Reject members that would land outside dest or are special files."""
    target = (dest / member.name).resolve()
    if target != dest and dest not in target.parents:
        raise ArchiveFailed(f"Archive member escapes extraction directory: {member.name}")
    if member.isdev():
        raise ArchiveFailed(f"Archive contains a device file: {member.name}")
    if member.islnk() or member.issym():
        link_target = (target.parent / member.linkname).resolve() if member.issym() \
            else (dest / member.linkname).resolve()
        if link_target != dest and dest not in link_target.parents:
            raise ArchiveFailed(f"Archive link points outside extraction directory: {member.name}")


def extract_archive(archive_path: str, dest_dir: str) -> Path:
    """
    Extract a tar.gz archive into dest_dir.

    Args:
        archive_path: Archive to extract
        dest_dir: Existing directory to extract into

    Returns:
        Path of dest_dir

    Raises:
        ArchiveFailed: If the archive is unreadable or contains unsafe members
    """
    dest = Path(dest_dir).resolve()
    try:
        with tarfile.open(archive_path, 'r:gz') as tar:
            members = tar.getmembers()
            for member in members:
                _check_member(member, dest)
            if hasattr(tarfile, 'data_filter'):
                tar.extractall(str(dest), members=members, filter='data')
            else:
                tar.extractall(str(dest), members=members)
    except ArchiveFailed:
        raise
    except (tarfile.TarError, OSError, EOFError) as e:
        raise ArchiveFailed(f"Failed to extract {os.path.basename(archive_path)}: {e}")

    return dest
