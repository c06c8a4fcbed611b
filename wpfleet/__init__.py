import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(app):
    """
    Send log records to the console and to a rotating file under LOG_DIR.

    Engine modules log through logging.getLogger(__name__), so the handlers
    are installed on the root logger as well as on app.logger.
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    level_name = app.config.get('LOG_LEVEL') or ('DEBUG' if app.config.get('DEBUG') else 'INFO')
    log_level = logging.getLevelName(level_name.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'wpfleet.log'),
        maxBytes=app.config['LOG_MAX_BYTES'],
        backupCount=app.config['LOG_BACKUP_COUNT'],
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    for handler in (console_handler, file_handler):
        handler.setLevel(log_level)
        app.logger.addHandler(handler)

    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])
    app.logger.setLevel(log_level)

    app.logger.info(f"Logging to {log_dir} at level {logging.getLevelName(log_level)}")


def _sqlite_dir(uri):
    if not uri.startswith('sqlite:///') or uri.endswith(':memory:'):
        return None
    return os.path.dirname(uri.replace('sqlite:///', '', 1)) or None


def _owns_scheduler(app) -> bool:
    """
    Whether this process runs the daily backup schedule.

    Under the development reloader only the child process does; under
    gunicorn only the worker flagged with SCHEDULER_WORKER=true does.
    """
    if not app.config.get('SCHEDULER_ENABLED', True):
        return False
    if app.config.get('DEBUG', False):
        return os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    return os.environ.get('SCHEDULER_WORKER', 'false').lower() == 'true'


def create_app(config_name=None, overrides=None):
    """
    Flask application factory.

    Args:
        config_name: 'development', 'production' or 'testing'
            (defaults to FLASK_ENV, then production)
        overrides: Extra config values applied before any extension starts
    """
    from wpfleet.config import config

    app = Flask(__name__)
    app.config.from_object(config[config_name or os.environ.get('FLASK_ENV', 'production')])
    if overrides:
        app.config.update(overrides)

    configure_logging(app)

    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    sqlite_dir = _sqlite_dir(app.config['SQLALCHEMY_DATABASE_URI'])
    if sqlite_dir:
        os.makedirs(sqlite_dir, exist_ok=True)

    db.init_app(app)

    from wpfleet.routes import sites_routes, artifacts_routes, history_routes, scheduler_routes
    for blueprint in (sites_routes.bp, artifacts_routes.bp, history_routes.bp, scheduler_routes.bp):
        app.register_blueprint(blueprint)

    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # flask --app wpfleet wpfleet <command>
    from wpfleet.cli import wpfleet_cli
    app.cli.add_command(wpfleet_cli)

    from wpfleet.migrations import init_database_schema
    init_database_schema(app)

    if _owns_scheduler(app):
        from wpfleet.scheduler import init_scheduler, start_scheduler, stop_scheduler
        init_scheduler(app)
        start_scheduler()
        atexit.register(stop_scheduler)
        app.logger.info(f"Scheduler started in process {os.getpid()}")
    else:
        app.logger.info("Scheduler not started in this process")

    return app
