"""
Database schema setup for wpfleet.

Creates missing tables without requiring Alembic.
"""

import logging
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError
from wpfleet import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Create the run history tables if they don't exist.

    Safe to call from several gunicorn workers at once: a worker that loses
    the race to create a table just logs it.
    """
    from wpfleet import models  # noqa: F401  (registers the tables)

    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = set(inspector.get_table_names())
        expected_tables = set(db.metadata.tables)

        missing = sorted(expected_tables - existing_tables)
        if not missing:
            return

        logger.info(f"Creating database tables: {', '.join(missing)}")
        try:
            db.create_all()
            logger.info("Database schema created successfully")
        except OperationalError as e:
            # Another worker created them first
            logger.warning(f"Schema creation raced with another process: {e}")
