"""
Command line interface: flask --app wpfleet wpfleet <command>

Every command runs inside the application context, so runs and restores are
recorded in the history tables exactly like scheduled ones.
"""

import json
import sys

import click
from flask import current_app
from flask.cli import AppGroup

from wpfleet.backup.artifacts import BackupClass
from wpfleet.backup.errors import (
    DiscoveryError,
    InvalidArtifactName,
    MigrationFailed,
    StorageError,
)
from wpfleet.backup.service import (
    SOURCE_MIGRATE,
    SOURCE_REMOTE,
    default_target,
    discover,
    group_artifacts,
    list_artifacts,
    push_migration,
    run_backup,
    run_restore,
    run_retention,
)
from wpfleet.scheduler import get_scheduled_jobs

wpfleet_cli = AppGroup('wpfleet', help='WordPress fleet backup, restore and migration.')


def _print_summary(run, summary, as_json):
    if summary is None:
        if as_json:
            click.echo(json.dumps(run.to_dict(), indent=2))
        else:
            click.echo(f"Backup run failed: {run.error_message}", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        for result in summary.results:
            click.echo(result.status_line())
        click.echo(summary.count_line())

    sys.exit(summary.exit_code)


@wpfleet_cli.command('sites')
def sites_command():
    """List discovered sites."""
    try:
        sites = discover()
    except DiscoveryError as e:
        raise click.ClickException(str(e))

    if not sites:
        click.echo(f"No sites found under {current_app.config['SITES_ROOT']}")
        return

    for site in sites:
        state = f"db {site.database_name}" if site.valid else "SKIPPED (no DB_NAME)"
        click.echo(f"{site.domain:<40} {str(site.root_path):<50} {state}")


@wpfleet_cli.command('backup')
@click.option('--class', 'backup_class', type=click.Choice(['manual', 'daily']), default='manual',
              show_default=True, help='Backup class; daily runs apply retention.')
@click.option('--domain', 'domains', multiple=True, help='Back up only this site (repeatable).')
@click.option('--json', 'as_json', is_flag=True, help='Print the structured result list.')
def backup_command(backup_class, domains, as_json):
    """Back up all (or the selected) sites."""
    try:
        run, summary = run_backup(BackupClass(backup_class), list(domains) or None)
    except ValueError as e:
        raise click.ClickException(str(e))
    _print_summary(run, summary, as_json)


@wpfleet_cli.command('migrate-backup')
@click.option('--domain', 'domains', multiple=True, help='Back up only this site (repeatable).')
@click.option('--json', 'as_json', is_flag=True, help='Print the structured result list.')
def migrate_backup_command(domains, as_json):
    """Snapshot sites into the local migration root."""
    try:
        run, summary = run_backup(BackupClass.MIGRATE, list(domains) or None)
    except ValueError as e:
        raise click.ClickException(str(e))
    if summary is not None and not as_json:
        click.echo(f"Migration backups written to {current_app.config['MIGRATE_ROOT']}")
    _print_summary(run, summary, as_json)


@wpfleet_cli.command('retention')
@click.argument('domain')
@click.option('--timestamp', 'token', required=True, help='Daily token, e.g. 20250601-033000.')
def retention_command(domain, token):
    """Re-run the retention pass of a site for an existing daily backup."""
    try:
        report = run_retention(domain, token)
    except (InvalidArtifactName, StorageError) as e:
        raise click.ClickException(str(e))

    for name in report.promoted:
        click.echo(f"promoted {name}")
    for name in report.deleted:
        click.echo(f"deleted  {name}")
    for error in report.errors:
        click.echo(f"error    {error}", err=True)
    click.echo(f"{domain}: {report.summary()}")
    sys.exit(0 if report.ok else 1)


@wpfleet_cli.command('artifacts')
@click.argument('domain')
@click.option('--source', type=click.Choice([SOURCE_REMOTE, SOURCE_MIGRATE]), default=SOURCE_REMOTE,
              show_default=True)
def artifacts_command(domain, source):
    """List a site's backups."""
    try:
        artifacts = list_artifacts(domain, source)
    except StorageError as e:
        raise click.ClickException(str(e))

    if not artifacts:
        click.echo(f"No backups found for {domain}")
        return

    for backup_class, entries in group_artifacts(artifacts).items():
        click.echo(f"[{backup_class}]")
        for entry in entries:
            click.echo(f"  {entry['name']}")


@wpfleet_cli.command('restore')
@click.argument('domain')
@click.option('--source', type=click.Choice([SOURCE_REMOTE, SOURCE_MIGRATE]), default=SOURCE_REMOTE,
              show_default=True)
@click.option('--target', 'target_root', default=None,
              help='Target directory (default from RESTORE_TARGET_TEMPLATE).')
@click.option('--yes', 'confirm', is_flag=True,
              help='Actually restore. Without it only the plan is shown.')
def restore_command(domain, source, target_root, confirm):
    """Restore a site's database and files (destructive with --yes)."""
    target_root = target_root or default_target(domain)
    try:
        record, result = run_restore(domain, source, target_root, confirm=confirm)
    except StorageError as e:
        raise click.ClickException(str(e))

    if record.status == 'failed':
        click.echo(f"Restore failed at step '{record.failed_step}': {record.error_message}", err=True)
        sys.exit(1)

    click.echo(f"Using DB backup   : {result.database_artifact}")
    click.echo(f"Using FILES backup: {result.files_artifact}")

    if result.dry_run:
        click.echo(f"Dry run: would restore {domain} into {target_root} "
                   f"(files there not in the backup are deleted). Re-run with --yes to proceed.")
        return

    click.echo(f"Restore of {domain} completed into {target_root}")


@wpfleet_cli.command('migrate-push')
@click.argument('host')
@click.option('--port', default=22, show_default=True, type=int)
@click.option('--user', 'username', default='root', show_default=True)
@click.option('--remote-path', default='/root/wp-migrate', show_default=True)
def migrate_push_command(host, port, username, remote_path):
    """Push the migration root to a new server over SSH."""
    try:
        result = push_migration(host, port, username, remote_path)
    except MigrationFailed as e:
        raise click.ClickException(str(e))

    click.echo(f"Pushed {len(result.files)} file(s) to {host}:{remote_path}")


@wpfleet_cli.command('schedule')
def schedule_command():
    """Show the configured schedule."""
    click.echo(f"Daily backup cron: {current_app.config['DAILY_BACKUP_CRON']} "
               f"({current_app.config['SCHEDULER_TIMEZONE']})")
    jobs = get_scheduled_jobs()
    if not jobs:
        click.echo("Scheduler is not running in this process")
        return
    for job in jobs:
        click.echo(f"{job['id']}: {job['name']} next run {job['next_run'] or 'N/A'}")
