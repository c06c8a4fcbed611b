"""
Application-side wiring of the backup engine.

Builds engine components from the Flask configuration and records every
run and restore in the history tables. The engine modules themselves never
touch the database.

Workflow of a recorded backup run:
1. Create BackupRun record (status: running)
2. Discover and select sites
3. Run the executor (snapshot, upload, retention)
4. Store one SiteBackupResult per site
5. Update BackupRun (status: success/partial/failed, counts, logs)
"""

import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from flask import current_app

from wpfleet import db
from wpfleet.models import BackupRun, SiteBackupResult, RestoreRecord
from .artifacts import Artifact, BackupClass, parse_listing, parse_timestamp
from .commands import check_tools
from .database import MySQLDatabase
from .errors import InconsistentArtifactSet, RestoreStepFailed, WPFleetError
from .executor import BackupExecutor, RunSummary
from .migration import MigrationTransport, PushResult
from .restore import STEP_RESOLVE, RestoreEngine, RestoreResult
from .retention import RetentionEngine, RetentionPolicy, RetentionReport
from .sites import Site, discover_sites, select_sites
from .snapshot import SnapshotWriter
from .storage import LocalStore, RemoteStore, create_remote_store

logger = logging.getLogger(__name__)

SOURCE_REMOTE = 'remote'
SOURCE_MIGRATE = 'migrate'


def _config(config=None):
    return config if config is not None else current_app.config


def build_remote_store(config=None) -> RemoteStore:
    config = _config(config)
    return create_remote_store(
        config['REMOTE_BACKEND'],
        config['REMOTE_ROOT'],
        binary=config['RCLONE_BINARY'],
        timeout=config['COMMAND_TIMEOUT'],
        bucket_name=config['S3_BUCKET'],
        access_key=config['S3_ACCESS_KEY'],
        secret_key=config['S3_SECRET_KEY'],
        region=config['S3_REGION'],
        endpoint_url=config['S3_ENDPOINT_URL'],
    )


def build_migrate_store(config=None) -> LocalStore:
    return LocalStore(_config(config)['MIGRATE_ROOT'])


def build_store(source: str = SOURCE_REMOTE, config=None) -> RemoteStore:
    if source == SOURCE_REMOTE:
        return build_remote_store(config)
    elif source == SOURCE_MIGRATE:
        return build_migrate_store(config)
    else:
        raise ValueError(f"Invalid restore source: {source}")


def build_database(config=None) -> MySQLDatabase:
    config = _config(config)
    return MySQLDatabase(
        defaults_file=config['MYSQL_DEFAULTS_FILE'],
        user=config['MYSQL_USER'],
        password=config['MYSQL_PASSWORD'],
        host=config['MYSQL_HOST'],
        mysqldump_binary=config['MYSQLDUMP_BINARY'],
        mysql_binary=config['MYSQL_BINARY'],
        timeout=config['COMMAND_TIMEOUT'],
    )


def build_retention_policy(config=None) -> RetentionPolicy:
    config = _config(config)
    return RetentionPolicy(
        daily_keep=config['RETENTION_DAILY_KEEP'],
        weekly_keep=config['RETENTION_WEEKLY_KEEP'],
        monthly_keep=config['RETENTION_MONTHLY_KEEP'],
        weekly_weekday=config['WEEKLY_PROMOTION_WEEKDAY'],
        monthly_day=config['MONTHLY_PROMOTION_DAY'],
    )


def discover(config=None) -> List[Site]:
    config = _config(config)
    return discover_sites(config['SITES_ROOT'], config['DISCOVERY_MAX_DEPTH'], config['MARKER_FILENAME'])


def missing_tools(backup_class: BackupClass, config=None) -> List[str]:
    """External binaries a backup run needs but cannot find."""
    config = _config(config)
    binaries = [config['MYSQLDUMP_BINARY']]
    if backup_class is not BackupClass.MIGRATE and config['REMOTE_BACKEND'] == 'rclone':
        binaries.append(config['RCLONE_BINARY'])
    return check_tools(binaries)


def run_backup(
    backup_class=BackupClass.MANUAL,
    domains: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> Tuple[BackupRun, Optional[RunSummary]]:
    """
    Run and record a fleet backup.

    Args:
        backup_class: manual, daily or migrate
        domains: Restrict the run to these sites (all discovered sites when empty)
        now: Run time (defaults to the current local time)

    Returns:
        (BackupRun record, RunSummary or None if the run could not start)

    Raises:
        ValueError: If a requested domain was not discovered
    """
    config = current_app.config
    backup_class = BackupClass(backup_class)

    run = BackupRun(backup_class=backup_class.value, status='running', started_at=datetime.utcnow())
    db.session.add(run)
    db.session.commit()

    try:
        sites = select_sites(discover(config), domains)

        if backup_class is BackupClass.MIGRATE:
            store = build_migrate_store(config)
            retention = None
        else:
            store = build_remote_store(config)
            retention = RetentionEngine(store, build_retention_policy(config))
    except ValueError:
        db.session.delete(run)
        db.session.commit()
        raise
    except WPFleetError as e:
        # Unreadable sites root or unusable store is fatal to the whole run
        logger.error(f"Backup run aborted: {e}")
        run.status = 'failed'
        run.error_message = str(e)
        run.completed_at = datetime.utcnow()
        db.session.commit()
        return run, None

    missing = missing_tools(backup_class, config)
    if missing:
        logger.warning(f"Missing external tools: {', '.join(missing)}")

    executor = BackupExecutor(
        writer=SnapshotWriter(build_database(config)),
        store=store,
        retention=retention,
        scratch_root=config['TEMP_DIR'],
        max_workers=config['MAX_WORKERS'],
    )

    try:
        summary = executor.run(sites, backup_class, now=now)
    except Exception as e:
        logger.exception("Backup run failed unexpectedly")
        run.status = 'failed'
        run.error_message = str(e)
        run.completed_at = datetime.utcnow()
        run.logs = '\n'.join(executor.logs)
        db.session.commit()
        raise

    _record_summary(run, summary)
    return run, summary


def _record_summary(run: BackupRun, summary: RunSummary):
    run.token = summary.token
    run.status = summary.status
    run.completed_at = summary.completed_at or datetime.utcnow()
    run.ok_count = summary.ok_count
    run.failed_count = summary.failed_count
    run.skipped_count = summary.skipped_count
    run.logs = '\n'.join(summary.logs)

    for result in summary.results:
        retention = result.retention
        db.session.add(SiteBackupResult(
            run=run,
            domain=result.domain,
            status=result.status.value,
            database_artifact=result.database_artifact,
            files_artifact=result.files_artifact,
            error_message=result.error,
            promoted_count=len(retention.promoted) if retention else 0,
            deleted_count=len(retention.deleted) if retention else 0,
            retention_errors=json.dumps(retention.errors) if retention and retention.errors else None,
        ))

    db.session.commit()


def run_retention(domain: str, token: str) -> RetentionReport:
    """
    Re-run the retention pass of a site for an existing daily token.

    Raises:
        InvalidArtifactName: If token is not a YYYYMMDD-HHMMSS token
    """
    run_date = parse_timestamp(token)
    store = build_remote_store()
    engine = RetentionEngine(store, build_retention_policy())
    return engine.apply(domain, token, run_date)


def list_artifacts(domain: str, source: str = SOURCE_REMOTE) -> List[Artifact]:
    store = build_store(source)
    return parse_listing(store.list(domain), domain=domain)


def group_artifacts(artifacts: List[Artifact]) -> Dict[str, List[Dict[str, str]]]:
    """Group an artifact listing by class, newest first within each class."""
    grouped = {}
    for artifact in sorted(artifacts, key=lambda a: (a.created_at, a.token), reverse=True):
        grouped.setdefault(artifact.backup_class.value, []).append({
            'name': artifact.filename,
            'kind': artifact.kind.value,
            'token': artifact.token,
            'created_at': artifact.created_at.isoformat(),
        })
    return grouped


def default_target(domain: str) -> str:
    return current_app.config['RESTORE_TARGET_TEMPLATE'].format(domain=domain)


def run_restore(
    domain: str,
    source: str = SOURCE_REMOTE,
    target_root: Optional[str] = None,
    confirm: bool = False,
) -> Tuple[RestoreRecord, Optional[RestoreResult]]:
    """
    Run and record a restore (a dry run unless confirm is set).

    Returns:
        (RestoreRecord, RestoreResult or None when the restore failed)
    """
    config = current_app.config
    target_root = target_root or default_target(domain)

    engine = RestoreEngine(
        store=build_store(source, config),
        provisioner=build_database(config),
        scratch_root=config['TEMP_DIR'],
        max_skew_hours=config['RESTORE_MAX_PAIR_SKEW_HOURS'],
        config_search_depth=config['RESTORE_CONFIG_SEARCH_DEPTH'],
        fallback_owner=config['RESTORE_FALLBACK_OWNER'],
        fallback_group=config['RESTORE_FALLBACK_GROUP'],
    )

    record = RestoreRecord(
        domain=domain,
        source=source,
        target_root=target_root,
        status='running',
        dry_run=not confirm,
        started_at=datetime.utcnow(),
    )
    db.session.add(record)
    db.session.commit()

    result = None
    try:
        result = engine.restore(domain, target_root, confirm=confirm)
        record.status = 'planned' if result.dry_run else 'success'
        record.database_artifact = result.database_artifact
        record.files_artifact = result.files_artifact
    except RestoreStepFailed as e:
        logger.error(str(e))
        record.status = 'failed'
        record.failed_step = e.step
        record.error_message = e.reason
    except InconsistentArtifactSet as e:
        logger.error(str(e))
        record.status = 'failed'
        record.failed_step = STEP_RESOLVE
        record.error_message = str(e)
    except Exception as e:
        logger.exception(f"Restore of {domain} failed unexpectedly")
        record.status = 'failed'
        record.error_message = str(e)
        raise
    finally:
        record.completed_at = datetime.utcnow()
        db.session.commit()

    return record, result


def push_migration(
    host: str,
    port: int = 22,
    username: str = 'root',
    remote_path: str = '/root/wp-migrate',
) -> PushResult:
    """
    Push the migration root to a new server.

    Raises:
        MigrationFailed: If the host is unreachable or the transfer is partial
    """
    config = current_app.config
    transport = MigrationTransport(
        username=username,
        key_file=config['SSH_KEY_FILE'],
        password=config['SSH_PASSWORD'],
        connect_timeout=config['SSH_CONNECT_TIMEOUT'],
    )
    return transport.push(config['MIGRATE_ROOT'], host, port, remote_path)
