"""
History routes - recorded backup runs and restores.
"""

from flask import Blueprint, jsonify, request

from wpfleet import db
from wpfleet.models import BackupRun, RestoreRecord


bp = Blueprint('history', __name__, url_prefix='/api/history')

RUN_STATUSES = ['running', 'success', 'partial', 'failed']
BACKUP_CLASSES = ['manual', 'daily', 'migrate']


def _pagination():
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200:
        limit = 200
    if limit < 1:
        limit = 1
    if offset < 0:
        offset = 0
    return limit, offset


@bp.route('', methods=['GET'])
def list_runs():
    """
    Get backup runs with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/partial/failed)
        - backup_class: Filter by class (manual/daily/migrate)
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    class_filter = request.args.get('backup_class')
    limit, offset = _pagination()

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if class_filter:
        if class_filter not in BACKUP_CLASSES:
            return jsonify({'error': 'Invalid backup_class filter'}), 400
        query = query.filter(BackupRun.backup_class == class_filter)

    total_count = query.count()

    runs = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [run.to_dict() for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_run_detail(run_id):
    """
    Get one backup run with its per-site results and logs.

    Args:
        run_id: BackupRun ID
    """
    run = db.get_or_404(BackupRun, run_id)

    data = run.to_dict(include_results=True)
    if run.completed_at:
        data['duration_seconds'] = int((run.completed_at - run.started_at).total_seconds())
    return jsonify(data)


@bp.route('/restores', methods=['GET'])
def list_restores():
    """
    Get restore records, newest first.

    Query params:
        - domain: Filter by site
        - limit / offset: Pagination
    """
    domain_filter = request.args.get('domain')
    limit, offset = _pagination()

    query = RestoreRecord.query
    if domain_filter:
        query = query.filter(RestoreRecord.domain == domain_filter)

    total_count = query.count()
    records = query.order_by(
        RestoreRecord.started_at.desc(), RestoreRecord.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [record.to_dict() for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })
