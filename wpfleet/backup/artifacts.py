"""
Artifact naming convention.

Every backup file is named so that a plain listing can be parsed back into
its site, kind, timestamp and class without auxiliary metadata:

    <domain>-<kind>-<timestamp>-<class>.<ext>

- kind: db (ext sql.gz) or files (ext tar.gz)
- timestamp: YYYYMMDD-HHMMSS, or YYYY-MM for monthly artifacts
- class: manual, daily, weekly, monthly, migrate

Timestamps are fixed-width and zero-padded, so lexicographic order of names
within one (domain, kind, class) equals chronological order.
"""

import re
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from .errors import InvalidArtifactName


TIMESTAMP_FORMAT = '%Y%m%d-%H%M%S'
MONTH_FORMAT = '%Y-%m'


class ArtifactKind(str, Enum):
    DATABASE = 'db'
    FILES = 'files'

    @property
    def extension(self) -> str:
        return 'sql.gz' if self is ArtifactKind.DATABASE else 'tar.gz'


class BackupClass(str, Enum):
    MANUAL = 'manual'
    DAILY = 'daily'
    WEEKLY = 'weekly'
    MONTHLY = 'monthly'
    MIGRATE = 'migrate'


# Classes that belong to the daily lineage and are subject to retention.
# Manual and migrate artifacts are never pruned automatically.
RETAINED_CLASSES = (BackupClass.DAILY, BackupClass.WEEKLY, BackupClass.MONTHLY)

_NAME_RE = re.compile(
    r'^(?P<domain>.+)-(?P<kind>db|files)-'
    r'(?P<token>\d{8}-\d{6}|\d{4}-\d{2})-'
    r'(?P<cls>manual|daily|weekly|monthly|migrate)'
    r'\.(?P<ext>sql\.gz|tar\.gz)$'
)
_FULL_TOKEN_RE = re.compile(r'^\d{8}-\d{6}$')
_MONTH_TOKEN_RE = re.compile(r'^\d{4}-\d{2}$')


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as a fixed-width artifact timestamp token."""
    return moment.strftime(TIMESTAMP_FORMAT)


def format_month(moment: datetime) -> str:
    """Format the year-month token used by monthly artifacts."""
    return moment.strftime(MONTH_FORMAT)


def parse_token(token: str) -> datetime:
    """
    Parse a timestamp token back into a datetime.

    Monthly tokens map to midnight on the first day of that month.

    Raises:
        InvalidArtifactName: If the token matches neither format
    """
    try:
        if _FULL_TOKEN_RE.match(token):
            return datetime.strptime(token, TIMESTAMP_FORMAT)
        if _MONTH_TOKEN_RE.match(token):
            return datetime.strptime(token, MONTH_FORMAT)
    except ValueError as e:
        raise InvalidArtifactName(f"Invalid timestamp token '{token}': {e}")
    raise InvalidArtifactName(f"Invalid timestamp token '{token}'")


def parse_timestamp(token: str) -> datetime:
    """Parse a full YYYYMMDD-HHMMSS token; year-month tokens are rejected."""
    if not _FULL_TOKEN_RE.match(token):
        raise InvalidArtifactName(f"Expected a YYYYMMDD-HHMMSS token, got '{token}'")
    return parse_token(token)


@dataclass(frozen=True)
class Artifact:
    """One backup file: a database dump or a file-tree archive."""

    domain: str
    kind: ArtifactKind
    token: str
    backup_class: BackupClass

    @property
    def created_at(self) -> datetime:
        return parse_token(self.token)

    @property
    def filename(self) -> str:
        return encode_artifact_name(self)

    def with_kind(self, kind: ArtifactKind) -> 'Artifact':
        """Return the artifact of the other kind from the same backup event."""
        return replace(self, kind=kind)

    def promoted(self, backup_class: BackupClass, token: Optional[str] = None) -> 'Artifact':
        """Return the name this artifact takes when copied into another tier."""
        return replace(self, backup_class=backup_class, token=token or self.token)

    def __str__(self):
        return self.filename


def encode_artifact_name(artifact: Artifact) -> str:
    """
    Build the filename for an artifact.

    Raises:
        InvalidArtifactName: If the fields cannot produce a parseable name
    """
    if not artifact.domain or '/' in artifact.domain:
        raise InvalidArtifactName(f"Invalid domain for artifact name: '{artifact.domain}'")

    kind = ArtifactKind(artifact.kind)
    backup_class = BackupClass(artifact.backup_class)

    if backup_class is BackupClass.MONTHLY:
        valid = bool(_MONTH_TOKEN_RE.match(artifact.token) or _FULL_TOKEN_RE.match(artifact.token))
    else:
        valid = bool(_FULL_TOKEN_RE.match(artifact.token))
    if not valid:
        raise InvalidArtifactName(
            f"Invalid timestamp token '{artifact.token}' for class {backup_class.value}"
        )

    return f"{artifact.domain}-{kind.value}-{artifact.token}-{backup_class.value}.{kind.extension}"


def decode_artifact_name(name: str) -> Artifact:
    """
    Parse a filename back into an Artifact.

    Raises:
        InvalidArtifactName: If the name does not follow the convention
    """
    match = _NAME_RE.match(name)
    if not match:
        raise InvalidArtifactName(f"Not an artifact name: '{name}'")

    kind = ArtifactKind(match.group('kind'))
    if match.group('ext') != kind.extension:
        raise InvalidArtifactName(f"Extension does not match kind in '{name}'")

    backup_class = BackupClass(match.group('cls'))
    token = match.group('token')
    if _MONTH_TOKEN_RE.match(token) and backup_class is not BackupClass.MONTHLY:
        raise InvalidArtifactName(f"Year-month token is only valid for monthly artifacts: '{name}'")

    # Validates the calendar values, e.g. rejects month 13
    parse_token(token)

    return Artifact(
        domain=match.group('domain'),
        kind=kind,
        token=token,
        backup_class=backup_class
    )


def parse_listing(names: Iterable[str], domain: Optional[str] = None) -> List[Artifact]:
    """
    Parse a remote listing, silently dropping names that are not artifacts.

    Args:
        names: Filenames as returned by a store listing
        domain: If given, keep only artifacts belonging to this domain

    Returns:
        Artifacts sorted by (class, kind, token)
    """
    artifacts = []
    for name in names:
        try:
            artifact = decode_artifact_name(name)
        except InvalidArtifactName:
            continue
        if domain is not None and artifact.domain != domain:
            continue
        artifacts.append(artifact)

    return sorted(artifacts, key=lambda a: (a.backup_class.value, a.kind.value, a.token))
