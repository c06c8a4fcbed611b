import json
from datetime import datetime
from wpfleet import db


class BackupRun(db.Model):
    """One fleet backup run (manual, daily or migrate)"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    backup_class = db.Column(db.String(20), nullable=False)  # manual, daily, migrate
    token = db.Column(db.String(20))  # YYYYMMDD-HHMMSS shared by all artifacts of the run
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    ok_count = db.Column(db.Integer, default=0, nullable=False)
    failed_count = db.Column(db.Integer, default=0, nullable=False)
    skipped_count = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Timestamped execution log

    # Relationship
    results = db.relationship('SiteBackupResult', back_populates='run', cascade='all, delete-orphan', lazy='dynamic')

    def to_dict(self, include_results=False):
        data = {
            'id': self.id,
            'backup_class': self.backup_class,
            'token': self.token,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'ok': self.ok_count,
            'failed': self.failed_count,
            'skipped': self.skipped_count,
            'error_message': self.error_message,
        }
        if include_results:
            data['results'] = [r.to_dict() for r in self.results.order_by(SiteBackupResult.id)]
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun {self.backup_class} status={self.status}>'


class SiteBackupResult(db.Model):
    """Outcome of one site within a backup run"""
    __tablename__ = 'site_backup_results'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    domain = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # ok, skipped, dump_failed, archive_failed, upload_failed, cancelled
    database_artifact = db.Column(db.String(500))
    files_artifact = db.Column(db.String(500))
    error_message = db.Column(db.Text)
    promoted_count = db.Column(db.Integer, default=0, nullable=False)
    deleted_count = db.Column(db.Integer, default=0, nullable=False)
    retention_errors = db.Column(db.Text)  # JSON list

    # Relationship
    run = db.relationship('BackupRun', back_populates='results')

    def to_dict(self):
        return {
            'domain': self.domain,
            'status': self.status,
            'database_artifact': self.database_artifact,
            'files_artifact': self.files_artifact,
            'error_message': self.error_message,
            'promoted': self.promoted_count,
            'deleted': self.deleted_count,
            'retention_errors': json.loads(self.retention_errors) if self.retention_errors else [],
        }

    def __repr__(self):
        return f'<SiteBackupResult {self.domain} status={self.status}>'


class RestoreRecord(db.Model):
    """Restore attempt (including dry runs)"""
    __tablename__ = 'restore_records'

    id = db.Column(db.Integer, primary_key=True)
    domain = db.Column(db.String(255), nullable=False)
    source = db.Column(db.String(20), nullable=False)  # remote or migrate
    target_root = db.Column(db.String(500), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, planned, success, failed
    failed_step = db.Column(db.String(20))
    database_artifact = db.Column(db.String(500))
    files_artifact = db.Column(db.String(500))
    error_message = db.Column(db.Text)
    dry_run = db.Column(db.Boolean, default=True, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'domain': self.domain,
            'source': self.source,
            'target_root': self.target_root,
            'status': self.status,
            'failed_step': self.failed_step,
            'database_artifact': self.database_artifact,
            'files_artifact': self.files_artifact,
            'error_message': self.error_message,
            'dry_run': self.dry_run,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }

    def __repr__(self):
        return f'<RestoreRecord {self.domain} status={self.status}>'
