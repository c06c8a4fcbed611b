"""
Unit tests for the command line interface (wpfleet/cli.py).

Commands are invoked through the Flask CLI runner against the test app; the
database engine is the in-memory fake.
"""

import json
from pathlib import Path
from unittest.mock import patch

from freezegun import freeze_time

from wpfleet.backup.errors import MigrationFailed
from wpfleet.backup.migration import PushResult
from wpfleet.models import BackupRun, RestoreRecord


def invoke(runner, *args):
    return runner.invoke(args=['wpfleet', *args])


class TestSitesCommand:

    def test_lists_sites(self, runner):
        result = invoke(runner, 'sites')

        assert result.exit_code == 0
        assert 'shop.example' in result.output
        assert 'db shop_db' in result.output
        assert 'SKIPPED (no DB_NAME)' in result.output

    def test_missing_root(self, app, runner, tmp_path):
        app.config['SITES_ROOT'] = str(tmp_path / 'missing')

        result = invoke(runner, 'sites')

        assert result.exit_code == 1
        assert 'does not exist' in result.output


class TestBackupCommand:
    """Test wpfleet backup and migrate-backup."""

    @freeze_time('2025-06-03 03:30:00')
    def test_manual_backup(self, app, runner, db, patched_database):
        result = invoke(runner, 'backup')

        assert result.exit_code == 0
        assert 'shop.example: ok' in result.output
        assert 'broken.example: skipped' in result.output
        assert '3 site(s): 2 ok, 0 failed, 1 skipped' in result.output

        run = BackupRun.query.one()
        assert run.token == '20250603-033000'
        assert run.backup_class == 'manual'
        uploaded = Path(app.config['REMOTE_ROOT']) / 'shop.example' / 'shop.example-db-20250603-033000-manual.sql.gz'
        assert uploaded.exists()

    def test_selected_domain_json(self, runner, db, patched_database):
        result = invoke(runner, 'backup', '--domain', 'blog.example', '--json')

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data['status'] == 'success'
        assert [r['domain'] for r in data['results']] == ['blog.example']

    def test_unknown_domain(self, runner, db, patched_database):
        result = invoke(runner, 'backup', '--domain', 'nope.example')

        assert result.exit_code == 1
        assert 'nope.example' in result.output
        assert BackupRun.query.count() == 0

    def test_dump_failure_exit_code(self, runner, db, patched_database):
        patched_database.fail_dump.add('shop_db')

        result = invoke(runner, 'backup')

        assert result.exit_code == 1
        assert 'shop.example: dump_failed' in result.output
        assert 'blog.example: ok' in result.output

    def test_weekly_class_rejected(self, runner, db, patched_database):
        result = invoke(runner, 'backup', '--class', 'weekly')

        assert result.exit_code == 2

    def test_missing_sites_root(self, app, runner, db, patched_database, tmp_path):
        app.config['SITES_ROOT'] = str(tmp_path / 'missing')

        result = invoke(runner, 'backup')

        assert result.exit_code == 1
        assert 'Backup run failed' in result.output
        assert BackupRun.query.one().status == 'failed'

    def test_migrate_backup(self, app, runner, db, patched_database):
        result = invoke(runner, 'migrate-backup', '--domain', 'shop.example')

        assert result.exit_code == 0
        assert f"Migration backups written to {app.config['MIGRATE_ROOT']}" in result.output
        assert len(list((Path(app.config['MIGRATE_ROOT']) / 'shop.example').iterdir())) == 2


class TestArtifactsCommand:

    def test_lists_grouped(self, app, runner, db, patched_database):
        with freeze_time('2025-06-03 03:30:00'):
            invoke(runner, 'backup', '--domain', 'shop.example')

        result = invoke(runner, 'artifacts', 'shop.example')

        assert result.exit_code == 0
        assert '[manual]' in result.output
        assert '  shop.example-files-20250603-033000-manual.tar.gz' in result.output

    def test_nothing_found(self, runner, db):
        result = invoke(runner, 'artifacts', 'shop.example')

        assert result.exit_code == 0
        assert 'No backups found for shop.example' in result.output


class TestRestoreCommand:
    """Test wpfleet restore."""

    def test_dry_run_by_default(self, app, runner, db, patched_database):
        invoke(runner, 'backup', '--domain', 'shop.example')

        result = invoke(runner, 'restore', 'shop.example')

        assert result.exit_code == 0
        assert 'Using DB backup   : shop.example-db-' in result.output
        assert 'Re-run with --yes' in result.output
        assert RestoreRecord.query.one().status == 'planned'
        assert patched_database.imported == {}

    def test_restore_with_yes(self, runner, db, patched_database, tmp_path):
        invoke(runner, 'backup', '--domain', 'shop.example')
        target = tmp_path / 'restore-target'

        result = invoke(runner, 'restore', 'shop.example', '--target', str(target), '--yes')

        assert result.exit_code == 0
        assert f'Restore of shop.example completed into {target}' in result.output
        assert (target / 'index.php').exists()
        assert 'shop_db' in patched_database.imported

    def test_restore_failure(self, runner, db, patched_database):
        result = invoke(runner, 'restore', 'shop.example', '--yes')

        assert result.exit_code == 1
        assert "Restore failed at step 'resolve'" in result.output
        assert RestoreRecord.query.one().failed_step == 'resolve'


class TestRetentionCommand:

    def test_prunes_old_dailies(self, app, runner, db):
        directory = Path(app.config['REMOTE_ROOT']) / 'shop.example'
        directory.mkdir(parents=True)
        for day in range(2, 11):
            for kind, ext in (('db', 'sql.gz'), ('files', 'tar.gz')):
                (directory / f'shop.example-{kind}-202506{day:02d}-033000-daily.{ext}').write_bytes(b'x')

        result = invoke(runner, 'retention', 'shop.example', '--timestamp', '20250610-033000')

        assert result.exit_code == 0
        assert 'deleted  shop.example-db-20250602-033000-daily.sql.gz' in result.output
        assert 'shop.example: promoted 0, deleted 4, errors 0' in result.output

    def test_bad_timestamp(self, runner, db):
        result = invoke(runner, 'retention', 'shop.example', '--timestamp', 'yesterday')

        assert result.exit_code == 1
        assert 'YYYYMMDD-HHMMSS' in result.output


class TestMigratePushCommand:

    @patch('wpfleet.cli.push_migration')
    def test_push(self, mock_push, runner):
        mock_push.return_value = PushResult(
            host='new.example.net', port=2222, remote_path='/srv/wp-migrate', files=['a', 'b'],
        )

        result = invoke(runner, 'migrate-push', 'new.example.net', '--port', '2222', '--remote-path', '/srv/wp-migrate')

        assert result.exit_code == 0
        assert 'Pushed 2 file(s) to new.example.net:/srv/wp-migrate' in result.output
        mock_push.assert_called_once_with('new.example.net', 2222, 'root', '/srv/wp-migrate')

    @patch('wpfleet.cli.push_migration')
    def test_unreachable(self, mock_push, runner):
        mock_push.side_effect = MigrationFailed('Host new.example.net:22 is not reachable: timed out')

        result = invoke(runner, 'migrate-push', 'new.example.net')

        assert result.exit_code == 1
        assert 'not reachable' in result.output


class TestScheduleCommand:

    def test_shows_schedule(self, runner):
        result = invoke(runner, 'schedule')

        assert result.exit_code == 0
        assert 'Daily backup cron: 30 3 * * * (UTC)' in result.output
        assert 'Scheduler is not running in this process' in result.output
