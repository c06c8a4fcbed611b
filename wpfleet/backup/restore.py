"""
Restore a site from its latest artifact pair.

Steps, in order (the name of a failed step is carried by RestoreStepFailed):

    resolve      pick the latest database and files artifacts
    fetch        download both into a scratch directory
    extract      unpack the files archive
    credentials  read the credential triple from the archived wp-config.php
    database     create database and user, import the dump
    files        mirror the extracted tree into the target (deletes extras)
    permissions  restore ownership and 755/644/600 modes

Steps after 'database' leave the host partially restored when they fail;
nothing is rolled back. The file mirror is destructive, so the engine only
mutates anything when called with confirm=True; otherwise it stops after
resolving and returns the plan.
"""

import grp
import logging
import os
import pwd
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .artifacts import Artifact, ArtifactKind, parse_listing
from .compression import extract_archive
from .database import DatabaseProvisioner
from .errors import (
    InconsistentArtifactSet,
    RestoreStepFailed,
    SiteInvalid,
    WPFleetError,
)
from .sites import MARKER_FILENAME, DatabaseCredentials, find_marker_files, parse_wp_config
from .storage import RemoteStore

logger = logging.getLogger(__name__)

STEP_RESOLVE = 'resolve'
STEP_FETCH = 'fetch'
STEP_EXTRACT = 'extract'
STEP_CREDENTIALS = 'credentials'
STEP_DATABASE = 'database'
STEP_FILES = 'files'
STEP_PERMISSIONS = 'permissions'

RESTORE_STEPS = (
    STEP_RESOLVE,
    STEP_FETCH,
    STEP_EXTRACT,
    STEP_CREDENTIALS,
    STEP_DATABASE,
    STEP_FILES,
    STEP_PERMISSIONS,
)

DIR_MODE = 0o755
FILE_MODE = 0o644
CONFIG_MODE = 0o600


@dataclass
class RestoreResult:
    domain: str
    target_root: str
    database_artifact: Optional[str] = None
    files_artifact: Optional[str] = None
    dry_run: bool = False
    completed_steps: List[str] = field(default_factory=list)
    owner: Optional[str] = None
    group: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            'domain': self.domain,
            'target_root': self.target_root,
            'database_artifact': self.database_artifact,
            'files_artifact': self.files_artifact,
            'dry_run': self.dry_run,
            'completed_steps': list(self.completed_steps),
            'owner': self.owner,
            'group': self.group,
        }


def _latest(artifacts: List[Artifact], kind: ArtifactKind) -> Optional[Artifact]:
    candidates = [a for a in artifacts if a.kind is kind]
    if not candidates:
        return None
    return max(candidates, key=lambda a: (a.created_at, a.token))


def select_artifact_pair(
    names: List[str],
    domain: str,
    max_skew_hours: float = 36,
) -> Tuple[Artifact, Artifact]:
    """
    Pick the latest database and the latest files artifact of a site.

    Both are chosen independently across all classes. When their timestamps
    differ by more than max_skew_hours the pair is rejected; 0 disables the
    check.

    Raises:
        RestoreStepFailed: If either kind is missing (step 'resolve')
        InconsistentArtifactSet: If the pair is too far apart
    """
    artifacts = parse_listing(names, domain=domain)
    database = _latest(artifacts, ArtifactKind.DATABASE)
    files = _latest(artifacts, ArtifactKind.FILES)

    if database is None or files is None:
        raise RestoreStepFailed(STEP_RESOLVE, f"Could not find database and files backups for {domain}")

    if max_skew_hours and database.token != files.token:
        skew = abs(database.created_at - files.created_at)
        if skew > timedelta(hours=max_skew_hours):
            raise InconsistentArtifactSet(
                f"Latest database backup {database.filename} and files backup {files.filename} "
                f"are {skew} apart (limit {max_skew_hours}h)"
            )

    return database, files


def find_config(extract_dir, max_depth: int = 5) -> Path:
    """
    Locate the marker configuration file in an extracted tree.

    Raises:
        RestoreStepFailed: If no marker file exists within max_depth (step 'credentials')
    """
    try:
        found = sorted(find_marker_files(extract_dir, max_depth), key=lambda p: (len(p.parts), str(p)))
    except WPFleetError as e:
        raise RestoreStepFailed(STEP_CREDENTIALS, str(e))
    if not found:
        raise RestoreStepFailed(STEP_CREDENTIALS, f"Could not find {MARKER_FILENAME} in extracted files")
    return found[0]


def mirror_tree(source: Path, dest: Path):
    """
    Make dest an exact copy of source.

    Entries in dest that do not exist in source are removed; files are
    copied with their metadata; symlinks are recreated as symlinks.
    """
    dest.mkdir(parents=True, exist_ok=True)

    source_names = set(os.listdir(source))

    for name in os.listdir(dest):
        if name not in source_names:
            _remove(dest / name)

    for name in sorted(source_names):
        src = source / name
        dst = dest / name

        if src.is_symlink():
            if dst.is_symlink() or dst.exists():
                _remove(dst)
            os.symlink(os.readlink(src), dst)
        elif src.is_dir():
            if dst.is_symlink() or (dst.exists() and not dst.is_dir()):
                _remove(dst)
            mirror_tree(src, dst)
            shutil.copystat(src, dst)
        else:
            if dst.is_symlink() or dst.is_dir():
                _remove(dst)
            shutil.copy2(src, dst)


def _remove(path: Path):
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def resolve_owner(target_root: Path, existed: bool, fallback_owner: str, fallback_group: str) -> Tuple[int, int, str, str]:
    """
    Ownership to apply to a restored tree.

    The existing owner of target_root wins when the directory existed before
    the restore; otherwise the fallback user and group are used.

    Returns:
        (uid, gid, owner name, group name)
    """
    if existed:
        st = target_root.stat()
        try:
            owner = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            owner = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return st.st_uid, st.st_gid, owner, group

    try:
        uid = pwd.getpwnam(fallback_owner).pw_uid
        gid = grp.getgrnam(fallback_group).gr_gid
    except KeyError as e:
        raise RestoreStepFailed(STEP_PERMISSIONS, f"Unknown fallback owner/group: {e}")
    return uid, gid, fallback_owner, fallback_group


def apply_permissions(target_root: Path, uid: Optional[int] = None, gid: Optional[int] = None):
    """
    Apply ownership (when given) and modes: directories 755, files 644,
    the top-level wp-config.php 600.
    """
    def fix(path: Path, mode: int):
        if uid is not None:
            os.lchown(path, uid, gid)
        os.chmod(path, mode)

    fix(target_root, DIR_MODE)
    for dirpath, dirnames, filenames in os.walk(target_root):
        for name in dirnames:
            path = Path(dirpath) / name
            if path.is_symlink():
                if uid is not None:
                    os.lchown(path, uid, gid)
                continue
            fix(path, DIR_MODE)
        for name in filenames:
            path = Path(dirpath) / name
            if path.is_symlink():
                if uid is not None:
                    os.lchown(path, uid, gid)
                continue
            fix(path, FILE_MODE)

    config = target_root / MARKER_FILENAME
    if config.is_file() and not config.is_symlink():
        os.chmod(config, CONFIG_MODE)


class RestoreEngine:
    """
    Rebuilds a site (database, credentials, files, permissions) from a store.
    """

    def __init__(
        self,
        store: RemoteStore,
        provisioner: DatabaseProvisioner,
        scratch_root: Optional[str] = None,
        max_skew_hours: float = 36,
        config_search_depth: int = 5,
        fallback_owner: str = 'root',
        fallback_group: str = 'root',
        change_owner: Optional[bool] = None,
    ):
        """
        Args:
            store: Store holding the site's artifacts (remote or migration root)
            provisioner: Creates the database/user and imports the dump
            scratch_root: Parent directory for the restore scratch directory
            max_skew_hours: Maximum distance between the paired artifacts (0 disables)
            config_search_depth: Depth searched for wp-config.php in the archive
            fallback_owner: Owner used when the target did not exist before
            fallback_group: Group used when the target did not exist before
            change_owner: chown the restored tree (defaults to running as root)
        """
        self.store = store
        self.provisioner = provisioner
        self.scratch_root = scratch_root
        self.max_skew_hours = max_skew_hours
        self.config_search_depth = config_search_depth
        self.fallback_owner = fallback_owner
        self.fallback_group = fallback_group
        self.change_owner = os.geteuid() == 0 if change_owner is None else change_owner

    def resolve(self, domain: str) -> Tuple[Artifact, Artifact]:
        try:
            names = self.store.list(domain)
        except WPFleetError as e:
            raise RestoreStepFailed(STEP_RESOLVE, f"Cannot list backups for {domain}: {e}")
        return select_artifact_pair(names, domain, self.max_skew_hours)

    def restore(self, domain: str, target_root, confirm: bool = False) -> RestoreResult:
        """
        Restore a site into target_root.

        Args:
            domain: Site whose artifacts are restored
            target_root: Directory the site files end up in
            confirm: Required to touch the database or the target; without it
                the call only resolves the artifact pair (dry run)

        Returns:
            RestoreResult describing what was (or would be) restored

        Raises:
            RestoreStepFailed: With the name of the failed step
            InconsistentArtifactSet: If the latest pair is too far apart
        """
        target = Path(target_root)
        result = RestoreResult(domain=domain, target_root=str(target), dry_run=not confirm)

        database, files = self.resolve(domain)
        result.database_artifact = database.filename
        result.files_artifact = files.filename
        result.completed_steps.append(STEP_RESOLVE)

        logger.info(f"{domain}: using database backup {self.store.describe(domain)}/{database.filename}")
        logger.info(f"{domain}: using files backup {self.store.describe(domain)}/{files.filename}")

        if not confirm:
            logger.info(f"{domain}: dry run, nothing restored into {target}")
            return result

        try:
            if self.scratch_root:
                os.makedirs(self.scratch_root, exist_ok=True)
            scratch_dir = tempfile.TemporaryDirectory(prefix=f'wpfleet-restore-{domain}-', dir=self.scratch_root)
        except OSError as e:
            raise RestoreStepFailed(STEP_FETCH, f"Cannot create scratch directory: {e}")

        with scratch_dir as scratch:
            scratch = Path(scratch)
            download_dir = scratch / 'download'
            extract_dir = scratch / 'extract'

            try:
                download_dir.mkdir()
                extract_dir.mkdir()
                db_path = self.store.download(domain, database.filename, str(download_dir))
                files_path = self.store.download(domain, files.filename, str(download_dir))
            except (WPFleetError, OSError) as e:
                raise RestoreStepFailed(STEP_FETCH, str(e))
            result.completed_steps.append(STEP_FETCH)

            logger.info(f"{domain}: extracting {files.filename}")
            try:
                extract_archive(files_path, str(extract_dir))
            except WPFleetError as e:
                raise RestoreStepFailed(STEP_EXTRACT, str(e))
            result.completed_steps.append(STEP_EXTRACT)

            config = find_config(extract_dir, self.config_search_depth)
            credentials = self._read_credentials(config)
            result.completed_steps.append(STEP_CREDENTIALS)
            logger.info(
                f"{domain}: parsed credentials DB_NAME={credentials.database_name} "
                f"DB_USER={credentials.database_user} DB_PASS=(hidden)"
            )

            try:
                self.provisioner.provision(credentials)
                self.provisioner.import_dump(credentials.database_name, db_path)
            except WPFleetError as e:
                raise RestoreStepFailed(STEP_DATABASE, str(e))
            result.completed_steps.append(STEP_DATABASE)

            existed = target.is_dir()
            logger.info(f"{domain}: syncing files to {target}")
            try:
                mirror_tree(config.parent, target)
            except OSError as e:
                raise RestoreStepFailed(STEP_FILES, f"Cannot mirror files into {target}: {e}")
            result.completed_steps.append(STEP_FILES)

        try:
            uid = gid = None
            if self.change_owner:
                uid, gid, result.owner, result.group = resolve_owner(
                    target, existed, self.fallback_owner, self.fallback_group
                )
                logger.info(f"{domain}: applying ownership {result.owner}:{result.group}")
            apply_permissions(target, uid, gid)
        except OSError as e:
            raise RestoreStepFailed(STEP_PERMISSIONS, str(e))
        result.completed_steps.append(STEP_PERMISSIONS)

        logger.info(f"{domain}: restore completed into {target}")
        return result

    @staticmethod
    def _read_credentials(config: Path) -> DatabaseCredentials:
        try:
            credentials = parse_wp_config(config)
        except SiteInvalid as e:
            raise RestoreStepFailed(STEP_CREDENTIALS, str(e))
        if not credentials.complete:
            raise RestoreStepFailed(STEP_CREDENTIALS, f"Failed to parse DB credentials from {config}")
        return credentials
