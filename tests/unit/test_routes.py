"""
Unit tests for the read-only JSON API (wpfleet/routes).
"""

from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from wpfleet.backup.errors import StorageError
from wpfleet.models import BackupRun, RestoreRecord, SiteBackupResult


def seed_remote(app, domain, names, root_key='REMOTE_ROOT'):
    directory = Path(app.config[root_key]) / domain
    directory.mkdir(parents=True, exist_ok=True)
    for name in names:
        (directory / name).write_bytes(b'data')


def add_run(db, backup_class='daily', status='success', started_at=None, **kwargs):
    started_at = started_at or datetime(2025, 6, 3, 3, 30)
    run = BackupRun(backup_class=backup_class, status=status, started_at=started_at, **kwargs)
    db.session.add(run)
    db.session.commit()
    return run


class TestHealth:

    def test_health(self, client):
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json() == {'status': 'healthy'}


class TestSitesRoutes:
    """Test /api/sites."""

    def test_list_sites(self, app, client):
        response = client.get('/api/sites')

        assert response.status_code == 200
        data = response.get_json()
        assert data['total'] == 3
        assert data['root'] == app.config['SITES_ROOT']

        sites = {s['domain']: s for s in data['sites']}
        assert sites['shop.example']['database_name'] == 'shop_db'
        assert sites['shop.example']['valid'] is True
        assert sites['broken.example']['database_name'] is None
        assert sites['broken.example']['valid'] is False

    def test_credentials_not_exposed(self, client):
        body = client.get('/api/sites').get_data(as_text=True)

        assert 'shop_pass' not in body
        assert 'shop_user' not in body

    def test_missing_root(self, app, client, tmp_path):
        app.config['SITES_ROOT'] = str(tmp_path / 'missing')

        response = client.get('/api/sites')

        assert response.status_code == 500
        assert 'does not exist' in response.get_json()['error']


class TestArtifactRoutes:
    """Test /api/artifacts."""

    def test_list_domains(self, app, client):
        seed_remote(app, 'shop.example', ['shop.example-db-20250603-033000-daily.sql.gz'])
        seed_remote(app, 'blog.example', ['blog.example-db-20250603-033000-daily.sql.gz'])

        response = client.get('/api/artifacts')

        assert response.status_code == 200
        assert response.get_json() == {'source': 'remote', 'domains': ['blog.example', 'shop.example']}

    def test_domain_artifacts(self, app, client):
        seed_remote(app, 'shop.example', [
            'shop.example-db-20250602-033000-daily.sql.gz',
            'shop.example-files-20250602-033000-daily.tar.gz',
            'shop.example-db-20250603-033000-daily.sql.gz',
            'shop.example-db-2025-06-monthly.sql.gz',
        ])

        response = client.get('/api/artifacts/shop.example')

        assert response.status_code == 200
        data = response.get_json()
        assert data['domain'] == 'shop.example'
        assert data['total'] == 4
        assert set(data['classes']) == {'daily', 'monthly'}
        assert data['classes']['daily'][0]['name'] == 'shop.example-db-20250603-033000-daily.sql.gz'
        assert data['classes']['monthly'][0]['kind'] == 'db'

    def test_migrate_source(self, app, client):
        seed_remote(app, 'shop.example', ['shop.example-db-20250603-033000-migrate.sql.gz'], root_key='MIGRATE_ROOT')

        response = client.get('/api/artifacts/shop.example?source=migrate')

        data = response.get_json()
        assert data['source'] == 'migrate'
        assert list(data['classes']) == ['migrate']

    def test_unknown_domain_is_empty(self, client):
        response = client.get('/api/artifacts/nope.example')

        assert response.status_code == 200
        assert response.get_json()['total'] == 0

    def test_invalid_source(self, client):
        assert client.get('/api/artifacts?source=dropbox').status_code == 400
        assert client.get('/api/artifacts/shop.example?source=dropbox').status_code == 400

    @patch('wpfleet.routes.artifacts_routes.list_artifacts')
    def test_storage_error(self, mock_list, client):
        mock_list.side_effect = StorageError('rclone exited with status 1')

        response = client.get('/api/artifacts/shop.example')

        assert response.status_code == 502
        assert 'rclone' in response.get_json()['error']


class TestHistoryRoutes:
    """Test /api/history."""

    def test_list_runs_newest_first(self, client, db):
        add_run(db, started_at=datetime(2025, 6, 1, 3, 30))
        add_run(db, started_at=datetime(2025, 6, 2, 3, 30), status='partial')

        response = client.get('/api/history')

        data = response.get_json()
        assert data['total'] == 2
        assert [r['status'] for r in data['records']] == ['partial', 'success']
        assert data['limit'] == 50
        assert data['offset'] == 0

    def test_filters(self, client, db):
        add_run(db, backup_class='daily', status='success')
        add_run(db, backup_class='manual', status='failed')
        add_run(db, backup_class='migrate', status='success')

        assert client.get('/api/history?status=success').get_json()['total'] == 2
        assert client.get('/api/history?backup_class=manual').get_json()['total'] == 1
        assert client.get('/api/history?status=success&backup_class=migrate').get_json()['total'] == 1

    def test_invalid_filters(self, client, db):
        assert client.get('/api/history?status=bogus').status_code == 400
        assert client.get('/api/history?backup_class=weekly').status_code == 400

    def test_pagination(self, client, db):
        for day in range(1, 6):
            add_run(db, started_at=datetime(2025, 6, day, 3, 30), token=f'202506{day:02d}-033000')

        data = client.get('/api/history?limit=2&offset=1').get_json()

        assert data['total'] == 5
        assert [r['token'] for r in data['records']] == ['20250604-033000', '20250603-033000']

    def test_limit_clamped(self, client, db):
        assert client.get('/api/history?limit=1000').get_json()['limit'] == 200
        assert client.get('/api/history?limit=0').get_json()['limit'] == 1
        assert client.get('/api/history?offset=-5').get_json()['offset'] == 0

    def test_run_detail(self, client, db):
        started = datetime(2025, 6, 3, 3, 30)
        run = add_run(db, status='partial', started_at=started, completed_at=started + timedelta(seconds=90),
                      logs='shop.example: ok')
        db.session.add(SiteBackupResult(run=run, domain='shop.example', status='ok'))
        db.session.commit()

        response = client.get(f'/api/history/{run.id}')

        assert response.status_code == 200
        data = response.get_json()
        assert data['duration_seconds'] == 90
        assert data['results'][0]['domain'] == 'shop.example'
        assert data['logs'] == 'shop.example: ok'

    def test_run_detail_not_found(self, client, db):
        assert client.get('/api/history/999').status_code == 404

    def test_restores(self, client, db):
        for domain, hour in [('shop.example', 10), ('blog.example', 11), ('shop.example', 12)]:
            db.session.add(RestoreRecord(
                domain=domain,
                source='remote',
                target_root=f'/home/{domain}/public_html',
                status='success',
                dry_run=False,
                started_at=datetime(2025, 6, 3, hour),
            ))
        db.session.commit()

        data = client.get('/api/history/restores?domain=shop.example').get_json()

        assert data['total'] == 2
        assert [r['started_at'] for r in data['records']] == ['2025-06-03T12:00:00', '2025-06-03T10:00:00']


class TestSchedulerRoutes:
    """Test /api/scheduler."""

    def test_status_without_scheduler(self, client, db):
        response = client.get('/api/scheduler')

        assert response.status_code == 200
        assert response.get_json() == {
            'running': False,
            'cron': '30 3 * * *',
            'timezone': 'UTC',
            'jobs': [],
        }
