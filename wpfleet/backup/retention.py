"""
Tiered retention and promotion of daily backups.

Evaluated once per daily run for each site, after that site's new daily
artifacts are confirmed on the remote store:

1. Prune the daily tier to daily_keep backup events.
2. On the weekly boundary (ISO weekday 7 by default), copy this run's daily
   artifacts to the weekly tier under the same timestamp token, then prune
   the weekly tier to weekly_keep.
3. On the monthly boundary (day 1 by default), copy this run's daily
   artifacts to the monthly tier under a year-month token (overwriting an
   existing one for that month), then prune the monthly tier to monthly_keep.

Database and files artifacts of one backup event share a timestamp token and
are always promoted and pruned together: a tier keeps or drops whole tokens.
A token missing either half (an interrupted upload, a promotion whose
rollback failed) is incomplete: it is deleted on the next pass and never
counts towards the keep limit.
Promotion is keyed off this run's own token, never off whatever daily
artifact happens to be newest remotely.

Failures are logged and collected, never raised: a failed copy does not stop
pruning, a failed delete does not stop the next tier. The next run
re-evaluates every tier from scratch.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .artifacts import (
    Artifact,
    ArtifactKind,
    BackupClass,
    format_month,
    parse_listing,
    parse_token,
)
from .errors import PromotionFailed, StorageError
from .storage import RemoteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionPolicy:
    """How many backup events each tier keeps, and when promotions happen."""

    daily_keep: int = 7
    weekly_keep: int = 4
    monthly_keep: int = 2
    weekly_weekday: int = 7
    monthly_day: int = 1

    def __post_init__(self):
        for name in ('daily_keep', 'weekly_keep', 'monthly_keep'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if not 1 <= self.weekly_weekday <= 7:
            raise ValueError("weekly_weekday must be an ISO weekday (1-7)")
        if not 1 <= self.monthly_day <= 28:
            raise ValueError("monthly_day must be between 1 and 28")

    def keep_for(self, backup_class: BackupClass) -> int:
        return {
            BackupClass.DAILY: self.daily_keep,
            BackupClass.WEEKLY: self.weekly_keep,
            BackupClass.MONTHLY: self.monthly_keep,
        }[backup_class]


@dataclass
class RetentionReport:
    """Outcome of one retention pass for one site."""

    domain: str
    token: str
    promoted: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return (
            f"promoted {len(self.promoted)}, deleted {len(self.deleted)}, "
            f"errors {len(self.errors)}"
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            'domain': self.domain,
            'token': self.token,
            'promoted': list(self.promoted),
            'deleted': list(self.deleted),
            'errors': list(self.errors),
        }


def tokens_to_prune(artifacts: List[Artifact], keep: int) -> List[str]:
    """
    Select the backup-event tokens beyond the newest `keep`.

    Tokens are ordered chronologically; a token counts once regardless of
    how many kinds it has, so a database dump and its archive share a fate.

    Returns:
        Tokens to delete, newest first
    """
    by_token = {}
    for artifact in artifacts:
        by_token.setdefault(artifact.token, artifact.created_at)

    ordered = sorted(by_token, key=lambda t: (by_token[t], t), reverse=True)
    return ordered[keep:]


def incomplete_tokens(artifacts: List[Artifact]) -> List[str]:
    """Tokens that lack either their database or their files artifact."""
    kinds = {}
    for artifact in artifacts:
        kinds.setdefault(artifact.token, set()).add(artifact.kind)
    return sorted(token for token, found in kinds.items() if len(found) < len(ArtifactKind))


class RetentionEngine:
    """
    Applies the retention policy to one site's prefix on a remote store.
    """

    def __init__(self, store: RemoteStore, policy: Optional[RetentionPolicy] = None):
        self.store = store
        self.policy = policy or RetentionPolicy()

    def apply(self, domain: str, token: str, run_date: Optional[datetime] = None) -> RetentionReport:
        """
        Run a full retention pass after a successful daily upload.

        Args:
            domain: Site whose prefix is processed
            token: Timestamp token of this run's daily artifacts
            run_date: Calendar date of the run (defaults to the token's date)

        Returns:
            RetentionReport (never raises for store failures)
        """
        run_date = run_date or parse_token(token)
        report = RetentionReport(domain=domain, token=token)

        logger.info(f"{domain}: retention pass for {token} ({run_date:%Y-%m-%d}, ISO weekday {run_date.isoweekday()})")

        self.prune(domain, BackupClass.DAILY, report)

        if run_date.isoweekday() == self.policy.weekly_weekday:
            self.promote(domain, token, BackupClass.WEEKLY, token, report)
        self.prune(domain, BackupClass.WEEKLY, report)

        if run_date.day == self.policy.monthly_day:
            self.promote(domain, token, BackupClass.MONTHLY, format_month(run_date), report)
        self.prune(domain, BackupClass.MONTHLY, report)

        logger.info(f"{domain}: retention pass finished: {report.summary()}")
        return report

    def _list_class(self, domain: str, backup_class: BackupClass) -> List[Artifact]:
        names = self.store.list(domain)
        return [a for a in parse_listing(names, domain=domain) if a.backup_class is backup_class]

    def prune(self, domain: str, backup_class: BackupClass, report: RetentionReport):
        """
        Delete every backup event of a tier beyond its keep count.

        Operates on a fresh listing, so artifacts promoted earlier in the same
        pass count against the tier.
        """
        keep = self.policy.keep_for(backup_class)

        try:
            artifacts = self._list_class(domain, backup_class)
        except StorageError as e:
            message = f"Could not list {backup_class.value} artifacts for {domain}: {e}"
            logger.error(message)
            report.errors.append(message)
            return

        incomplete = set(incomplete_tokens(artifacts))
        complete = [a for a in artifacts if a.token not in incomplete]
        doomed = set(tokens_to_prune(complete, keep)) | incomplete
        if not doomed:
            return

        if incomplete:
            logger.warning(
                f"{domain}: removing {len(incomplete)} incomplete {backup_class.value} backup(s): "
                f"{', '.join(sorted(incomplete))}"
            )
        logger.info(f"{domain}: pruning {len(doomed)} {backup_class.value} backup(s) beyond {keep}")

        for artifact in sorted(artifacts, key=lambda a: (a.token, a.kind.value)):
            if artifact.token not in doomed:
                continue
            try:
                self.store.delete(domain, artifact.filename)
                report.deleted.append(artifact.filename)
                logger.info(f"{domain}: deleted {artifact.filename}")
            except StorageError as e:
                message = f"Failed to delete {artifact.filename}: {e}"
                logger.warning(message)
                report.errors.append(message)

    def promote(
        self,
        domain: str,
        token: str,
        backup_class: BackupClass,
        dest_token: str,
        report: RetentionReport,
    ):
        """
        Copy this run's daily artifacts into a longer-retention tier.

        Both kinds are copied; if the second copy fails the first is removed
        again so the tier never holds half of a backup event.
        """
        copied = []
        try:
            for kind in (ArtifactKind.DATABASE, ArtifactKind.FILES):
                source = Artifact(domain, kind, token, BackupClass.DAILY)
                dest = source.promoted(backup_class, dest_token)
                try:
                    self.store.copy(domain, source.filename, dest.filename)
                except StorageError as e:
                    raise PromotionFailed(f"Failed to promote {source.filename} to {dest.filename}: {e}")
                copied.append(dest.filename)
        except PromotionFailed as e:
            logger.warning(str(e))
            report.errors.append(str(e))
            self._rollback(domain, copied, report)
            return

        report.promoted.extend(copied)
        logger.info(f"{domain}: promoted {token} to {backup_class.value} ({dest_token})")

    def _rollback(self, domain: str, names: List[str], report: RetentionReport):
        for name in names:
            try:
                self.store.delete(domain, name)
                logger.info(f"{domain}: removed half-promoted {name}")
            except StorageError as e:
                message = f"Failed to remove half-promoted {name}: {e}"
                logger.error(message)
                report.errors.append(message)
