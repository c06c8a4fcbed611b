# Gunicorn configuration for wpfleet
# Exactly one worker owns the daily backup schedule

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '127.0.0.1:8000')
workers = int(os.environ.get('GUNICORN_WORKERS', 2))
wsgi_app = 'wpfleet:create_app()'


def post_fork(server, worker):
    """
    Flag the first forked worker as the scheduler owner.

    Runs in the worker before the application is loaded, so create_app()
    sees SCHEDULER_WORKER and only that worker starts APScheduler.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker; the arbiter numbers them 1, 2, 3, ... in worker.age
    """
    owner = worker.age == 1
    os.environ['SCHEDULER_WORKER'] = 'true' if owner else 'false'
    role = 'scheduler owner' if owner else 'HTTP only'
    logger.info(f"Worker {worker.pid} (age={worker.age}): {role}")
