"""
Fleet backup executor - orchestrates the backup workflow for many sites.

Workflow per site:
1. Skip sites without a database name
2. Create a scratch directory (always removed afterwards)
3. Snapshot: database dump + file-tree archive
4. Upload both artifacts to the site's prefix on the store
5. Daily runs only: retention pass (prune and promote)

Sites are independent, so they run on a bounded worker pool. A site's
retention pass only starts after its own upload succeeded. Failures are
contained per site and reported in the run summary.
"""

import logging
import os
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from .artifacts import BackupClass, format_timestamp
from .errors import (
    ArchiveFailed,
    CredentialsUnavailable,
    DumpFailed,
    StorageError,
)
from .retention import RetentionEngine, RetentionReport
from .sites import Site
from .snapshot import SnapshotWriter
from .storage import RemoteStore

logger = logging.getLogger(__name__)


class SiteStatus(str, Enum):
    OK = 'ok'
    SKIPPED = 'skipped'
    DUMP_FAILED = 'dump_failed'
    ARCHIVE_FAILED = 'archive_failed'
    UPLOAD_FAILED = 'upload_failed'
    CANCELLED = 'cancelled'


# Skipped sites (no database name) are not failures
FAILED_STATUSES = (
    SiteStatus.DUMP_FAILED,
    SiteStatus.ARCHIVE_FAILED,
    SiteStatus.UPLOAD_FAILED,
    SiteStatus.CANCELLED,
)


@dataclass
class SiteResult:
    domain: str
    status: SiteStatus
    database_artifact: Optional[str] = None
    files_artifact: Optional[str] = None
    error: Optional[str] = None
    retention: Optional[RetentionReport] = None

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES

    def status_line(self) -> str:
        line = f"{self.domain}: {self.status.value}"
        if self.error:
            line += f" ({self.error})"
        elif self.retention is not None:
            line += f" [retention: {self.retention.summary()}]"
        return line

    def to_dict(self) -> Dict[str, object]:
        return {
            'domain': self.domain,
            'status': self.status.value,
            'database_artifact': self.database_artifact,
            'files_artifact': self.files_artifact,
            'error': self.error,
            'retention': self.retention.to_dict() if self.retention else None,
        }


@dataclass
class RunSummary:
    backup_class: BackupClass
    token: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    results: List[SiteResult] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def ok_count(self) -> int:
        return sum(1 for r in self.results if r.status is SiteStatus.OK)

    @property
    def skipped_count(self) -> int:
        return sum(1 for r in self.results if r.status is SiteStatus.SKIPPED)

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.failed)

    @property
    def status(self) -> str:
        if self.failed_count == 0:
            return 'success'
        if self.ok_count == 0:
            return 'failed'
        return 'partial'

    @property
    def exit_code(self) -> int:
        """Zero only if every attempted site succeeded."""
        return 1 if self.failed_count else 0

    def count_line(self) -> str:
        return (
            f"{len(self.results)} site(s): {self.ok_count} ok, "
            f"{self.failed_count} failed, {self.skipped_count} skipped"
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            'backup_class': self.backup_class.value,
            'token': self.token,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'ok': self.ok_count,
            'failed': self.failed_count,
            'skipped': self.skipped_count,
            'results': [r.to_dict() for r in self.results],
        }


class BackupExecutor:
    """
    Runs snapshot, upload and retention for a selection of sites.
    """

    def __init__(
        self,
        writer: SnapshotWriter,
        store: RemoteStore,
        retention: Optional[RetentionEngine] = None,
        scratch_root: Optional[str] = None,
        max_workers: int = 1,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            writer: Produces the artifacts of one site
            store: Destination of the artifacts (remote store or migration root)
            retention: Retention engine; applied to daily runs only
            scratch_root: Parent directory for per-site scratch directories
            max_workers: Number of sites processed concurrently
            cancel_event: When set, no further site is started
        """
        self.writer = writer
        self.store = store
        self.retention = retention
        self.scratch_root = scratch_root
        self.max_workers = max(1, max_workers)
        self.cancel_event = cancel_event or threading.Event()
        self.logs = []
        self._logs_lock = threading.Lock()

    def run(self, sites: List[Site], backup_class: BackupClass, now: Optional[datetime] = None) -> RunSummary:
        """
        Back up the given sites.

        Args:
            sites: Sites to process (already selected by the caller)
            backup_class: manual, daily or migrate
            now: Run time; all artifacts of the run share its timestamp token

        Returns:
            RunSummary with one SiteResult per site, in input order
        """
        backup_class = BackupClass(backup_class)
        if backup_class in (BackupClass.WEEKLY, BackupClass.MONTHLY):
            raise ValueError(f"{backup_class.value} artifacts are only created by promotion")

        domains = [site.domain for site in sites]
        shared = sorted({domain for domain in domains if domains.count(domain) > 1})
        if shared:
            raise ValueError(f"Sites share a domain and would overwrite each other's artifacts: {', '.join(shared)}")

        now = now or datetime.now()
        token = format_timestamp(now)
        summary = RunSummary(backup_class=backup_class, token=token, started_at=datetime.utcnow())

        self._log(f"Starting {backup_class.value} backup of {len(sites)} site(s) (token {token})")

        credentials_error = None
        if any(site.valid for site in sites):
            try:
                self.writer.dumper.ensure_credentials()
            except CredentialsUnavailable as e:
                credentials_error = str(e)
                self._log(f"Database credentials unavailable: {e}")

        def task(site):
            if self.cancel_event.is_set():
                return SiteResult(site.domain, SiteStatus.CANCELLED, error='run cancelled before start')
            if credentials_error and site.valid:
                return SiteResult(site.domain, SiteStatus.DUMP_FAILED, error=credentials_error)
            return self.backup_site(site, backup_class, token, now)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='site-backup') as pool:
            futures = [pool.submit(task, site) for site in sites]
            summary.results = [future.result() for future in futures]

        for result in summary.results:
            self._log(result.status_line())

        summary.completed_at = datetime.utcnow()
        self._log(f"Backup finished: {summary.count_line()}")
        summary.logs = list(self.logs)
        return summary

    def backup_site(self, site: Site, backup_class: BackupClass, token: str, run_date: datetime) -> SiteResult:
        """
        Snapshot, upload and (for daily runs) apply retention for one site.

        Never raises: every failure is mapped to a SiteResult status.
        """
        if not site.valid:
            self._log(f"Skipping {site.domain}: could not parse DB_NAME from {site.config_path}")
            return SiteResult(site.domain, SiteStatus.SKIPPED, error='no database name')

        self._log(f"Backing up {site.domain} (db {site.database_name}, root {site.root_path})")

        if self.scratch_root:
            os.makedirs(self.scratch_root, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=f'wpfleet-{site.domain}-', dir=self.scratch_root) as scratch:
            try:
                db_path, files_path = self.writer.snapshot(
                    site, backup_class, scratch, token, cancel_event=self.cancel_event
                )
            except DumpFailed as e:
                self._log(f"{site.domain}: database dump failed: {e}")
                return SiteResult(site.domain, SiteStatus.DUMP_FAILED, error=str(e))
            except ArchiveFailed as e:
                self._log(f"{site.domain}: file archive failed: {e}")
                return SiteResult(site.domain, SiteStatus.ARCHIVE_FAILED, error=str(e))
            except Exception as e:
                logger.exception(f"{site.domain}: unexpected snapshot failure")
                return SiteResult(site.domain, SiteStatus.ARCHIVE_FAILED, error=f"unexpected error: {e}")

            result = SiteResult(
                site.domain,
                SiteStatus.OK,
                database_artifact=os.path.basename(db_path),
                files_artifact=os.path.basename(files_path),
            )

            self._log(f"{site.domain}: uploading to {self.store.describe(site.domain)}")
            try:
                self.store.upload(scratch, site.domain)
            except StorageError as e:
                self._log(f"{site.domain}: upload failed, retention skipped: {e}")
                self._discard_upload(site.domain, result)
                result.status = SiteStatus.UPLOAD_FAILED
                result.error = str(e)
                return result
            except Exception as e:
                logger.exception(f"{site.domain}: unexpected upload failure")
                self._discard_upload(site.domain, result)
                result.status = SiteStatus.UPLOAD_FAILED
                result.error = f"unexpected error: {e}"
                return result

        if backup_class is BackupClass.DAILY and self.retention is not None:
            result.retention = self.retention.apply(site.domain, token, run_date)
            for error in result.retention.errors:
                self._log(f"{site.domain}: retention: {error}")

        self._log(f"{site.domain}: backup completed")
        return result

    def _discard_upload(self, domain: str, result: SiteResult):
        """
        Remove whatever part of a failed upload reached the store.

        An upload that stops after the first artifact would otherwise leave a
        database artifact without its files partner. Best effort: retention
        removes anything left behind on the next daily pass.
        """
        for name in (result.database_artifact, result.files_artifact):
            try:
                self.store.delete(domain, name)
                self._log(f"{domain}: removed partially uploaded {name}")
            except StorageError as e:
                logger.debug(f"{domain}: nothing removed for {name}: {e}")
            except Exception:
                logger.exception(f"{domain}: could not remove partially uploaded {name}")

    def cancel(self):
        """Stop starting new sites; in-flight external commands are terminated."""
        self.cancel_event.set()

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        with self._logs_lock:
            self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)
