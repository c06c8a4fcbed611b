"""
Backup lifecycle engine for wpfleet.

This package handles:
- Site discovery (wp-config.php scanning)
- Snapshots (database dump + file-tree archive)
- Remote stores (rclone, S3, local directory)
- Tiered retention and promotion (daily -> weekly -> monthly)
- Restore and server-to-server migration
"""

from .artifacts import Artifact, ArtifactKind, BackupClass, decode_artifact_name, encode_artifact_name
from .executor import BackupExecutor, RunSummary, SiteResult, SiteStatus
from .migration import MigrationTransport
from .restore import RestoreEngine, RestoreResult
from .retention import RetentionEngine, RetentionPolicy
from .sites import Site, discover_sites
from .snapshot import SnapshotWriter
from .storage import LocalStore, RcloneStore, RemoteStore, S3Store, create_remote_store

__all__ = [
    'Artifact',
    'ArtifactKind',
    'BackupClass',
    'decode_artifact_name',
    'encode_artifact_name',
    'BackupExecutor',
    'RunSummary',
    'SiteResult',
    'SiteStatus',
    'MigrationTransport',
    'RestoreEngine',
    'RestoreResult',
    'RetentionEngine',
    'RetentionPolicy',
    'Site',
    'discover_sites',
    'SnapshotWriter',
    'LocalStore',
    'RcloneStore',
    'RemoteStore',
    'S3Store',
    'create_remote_store',
]
