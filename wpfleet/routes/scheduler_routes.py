"""
Scheduler routes - state of the daily backup schedule.
"""

from flask import Blueprint, current_app, jsonify

from wpfleet.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('scheduler', __name__, url_prefix='/api/scheduler')


@bp.route('', methods=['GET'])
def scheduler_status():
    return jsonify({
        'running': is_scheduler_running(),
        'cron': current_app.config['DAILY_BACKUP_CRON'],
        'timezone': current_app.config['SCHEDULER_TIMEZONE'],
        'jobs': get_scheduled_jobs(),
    })
