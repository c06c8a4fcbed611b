"""
Unit tests for database models (wpfleet/models.py).

Tests the run history models and their serialisation.
"""

import json
from datetime import datetime, timedelta

from wpfleet.migrations import init_database_schema
from wpfleet.models import BackupRun, RestoreRecord, SiteBackupResult


class TestBackupRunModel:
    """Test BackupRun model."""

    def test_create_run(self, db):
        run = BackupRun(backup_class='daily', status='running')
        db.session.add(run)
        db.session.commit()

        assert run.id is not None
        assert run.started_at is not None
        assert run.ok_count == 0
        assert run.to_dict()['status'] == 'running'

    def test_results_relationship(self, db):
        run = BackupRun(backup_class='daily', status='partial', token='20250601-033000')
        db.session.add(run)
        db.session.add(SiteBackupResult(run=run, domain='shop.example', status='ok', promoted_count=4))
        db.session.add(SiteBackupResult(run=run, domain='blog.example', status='upload_failed',
                                        error_message='quota exceeded'))
        db.session.commit()

        data = run.to_dict(include_results=True)

        assert [r['domain'] for r in data['results']] == ['shop.example', 'blog.example']
        assert data['results'][0]['promoted'] == 4
        assert data['results'][1]['error_message'] == 'quota exceeded'
        assert 'logs' in data
        assert 'results' not in run.to_dict()

    def test_results_deleted_with_run(self, db):
        run = BackupRun(backup_class='manual', status='success')
        db.session.add(run)
        db.session.add(SiteBackupResult(run=run, domain='shop.example', status='ok'))
        db.session.commit()

        db.session.delete(run)
        db.session.commit()

        assert SiteBackupResult.query.count() == 0


class TestSiteBackupResultModel:
    """Test SiteBackupResult model."""

    def test_retention_errors_json(self, db):
        run = BackupRun(backup_class='daily', status='partial')
        result = SiteBackupResult(
            run=run,
            domain='shop.example',
            status='ok',
            retention_errors=json.dumps(['Failed to delete x']),
        )
        db.session.add_all([run, result])
        db.session.commit()

        assert result.to_dict()['retention_errors'] == ['Failed to delete x']

    def test_no_retention_errors(self, db):
        run = BackupRun(backup_class='daily', status='success')
        result = SiteBackupResult(run=run, domain='shop.example', status='ok')
        db.session.add_all([run, result])
        db.session.commit()

        assert result.to_dict()['retention_errors'] == []


class TestRestoreRecordModel:
    """Test RestoreRecord model."""

    def test_to_dict(self, db):
        started = datetime(2025, 6, 3, 10, 0)
        record = RestoreRecord(
            domain='shop.example',
            source='remote',
            target_root='/home/shop.example/public_html',
            status='failed',
            failed_step='database',
            dry_run=False,
            started_at=started,
            completed_at=started + timedelta(seconds=5),
        )
        db.session.add(record)
        db.session.commit()

        data = record.to_dict()

        assert data['failed_step'] == 'database'
        assert data['dry_run'] is False
        assert data['started_at'] == '2025-06-03T10:00:00'


class TestSchema:
    """Test schema creation."""

    def test_init_is_idempotent(self, app, db):
        init_database_schema(app)
        init_database_schema(app)

        assert BackupRun.query.count() == 0
