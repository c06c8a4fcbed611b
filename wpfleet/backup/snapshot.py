"""
Per-site snapshots: one database dump and one file-tree archive.

Both artifacts are written under temporary names inside a caller-supplied
scratch directory and renamed to their final names only when both halves
succeeded. Either half failing discards both.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple

from .artifacts import Artifact, ArtifactKind, BackupClass
from .compression import create_archive
from .database import DatabaseDumper
from .errors import ArchiveFailed, CredentialsUnavailable, DumpFailed
from .sites import Site

logger = logging.getLogger(__name__)


def _partial_name(path: str) -> str:
    head, tail = os.path.split(path)
    return os.path.join(head, f".{tail}.part")


def _discard(*paths: str):
    for path in paths:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial artifact {path}: {e}")


def _failure(call, failure_type, domain):
    """
    Run one half of a snapshot and return its error, if any.

    Anything the half raises comes back as failure_type, so an unexpected
    error is still attributed to the half that produced it.
    """
    try:
        call()
    except failure_type as e:
        return e
    except CredentialsUnavailable as e:
        return failure_type(str(e))
    except Exception as e:
        logger.exception(f"{domain}: unexpected {failure_type.__name__} error")
        return failure_type(f"unexpected error: {e}")
    return None


class SnapshotWriter:
    """
    Writes the database and files artifacts of one backup event.
    """

    def __init__(self, dumper: DatabaseDumper, parallel: bool = True):
        """
        Args:
            dumper: Database dump implementation
            parallel: Run the dump and the archive concurrently
        """
        self.dumper = dumper
        self.parallel = parallel

    def snapshot(
        self,
        site: Site,
        backup_class: BackupClass,
        scratch_dir: str,
        token: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[str, str]:
        """
        Create the artifacts for one site.

        Args:
            site: Site to back up (must be valid)
            backup_class: Class label encoded in the artifact names
            scratch_dir: Directory the caller removes afterwards
            token: Timestamp token shared by both artifacts (YYYYMMDD-HHMMSS)
            cancel_event: Cancels an in-flight dump

        Returns:
            (database artifact path, files artifact path)

        Raises:
            DumpFailed: If the database dump failed
            ArchiveFailed: If the dump succeeded but the archive failed
        """
        db_artifact = Artifact(site.domain, ArtifactKind.DATABASE, token, BackupClass(backup_class))
        files_artifact = db_artifact.with_kind(ArtifactKind.FILES)

        db_path = os.path.join(scratch_dir, db_artifact.filename)
        files_path = os.path.join(scratch_dir, files_artifact.filename)
        db_partial = _partial_name(db_path)
        files_partial = _partial_name(files_path)

        logger.info(f"{site.domain}: dumping database {site.database_name} and archiving {site.root_path}")

        dump_error = None
        archive_error = None

        if self.parallel:
            with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f'snapshot-{site.domain}') as pool:
                dump_future = pool.submit(self._dump, site, db_partial, cancel_event)
                archive_future = pool.submit(create_archive, str(site.root_path), files_partial)
                dump_error = _failure(dump_future.result, DumpFailed, site.domain)
                archive_error = _failure(archive_future.result, ArchiveFailed, site.domain)
        else:
            dump_error = _failure(lambda: self._dump(site, db_partial, cancel_event), DumpFailed, site.domain)
            if dump_error is None:
                archive_error = _failure(
                    lambda: create_archive(str(site.root_path), files_partial), ArchiveFailed, site.domain
                )

        if dump_error is not None or archive_error is not None:
            _discard(db_partial, files_partial)
            raise dump_error or archive_error

        try:
            os.replace(db_partial, db_path)
            os.replace(files_partial, files_path)
        except OSError as e:
            _discard(db_partial, files_partial, db_path, files_path)
            raise ArchiveFailed(f"Could not finalize artifacts for {site.domain}: {e}")

        logger.info(f"{site.domain}: created {db_artifact.filename} and {files_artifact.filename}")
        return db_path, files_path

    def _dump(self, site: Site, output_path: str, cancel_event):
        if not site.valid:
            raise DumpFailed(f"{site.domain} has no database name")
        self.dumper.dump(site.database_name, output_path, cancel_event=cancel_event)
