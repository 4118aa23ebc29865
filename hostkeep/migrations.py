"""
Database migrations for hostkeep.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from sqlalchemy.exc import SQLAlchemyError
from hostkeep import db

logger = logging.getLogger(__name__)


# Columns to add to existing tables on startup: (table, column, DDL type)
ADDITIVE_COLUMNS = []


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates tables if they don't exist and adds any missing columns to
    existing ones.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
            db.create_all()
            logger.info("Database schema created successfully")
        else:
            # Tables exist - create any new ones, then migrate
            db.create_all()
            run_migrations(app, inspect(db.engine))


def run_migrations(app, inspector=None):
    """
    Add missing columns listed in ADDITIVE_COLUMNS.

    Returns:
        List of "table.column" names that were added
    """
    if inspector is None:
        inspector = inspect(db.engine)

    added = []
    tables = inspector.get_table_names()

    for table, column, ddl in ADDITIVE_COLUMNS:
        if table not in tables:
            continue
        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            added.append(f"{table}.{column}")
            logger.info(f"Successfully added {column} column")
        except SQLAlchemyError as e:
            logger.error(f"Failed to add {column} column: {e}")
            db.session.rollback()

    if added:
        logger.info(f"Database migrations applied: {', '.join(added)}")
    else:
        logger.debug("Database schema is up to date")

    return added
