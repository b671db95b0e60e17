"""
Shared database access for handlers and jobs
"""

import os
import logging
import psycopg2
import psycopg2.errors
import psycopg2.extras

from shared.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)


def get_db_connection():
    """Get database connection using DATABASE_URL or individual environment variables"""
    try:
        # Hosted Postgres provides DATABASE_URL
        database_url = os.environ.get('DATABASE_URL')
        if database_url:
            conn = psycopg2.connect(
                database_url,
                cursor_factory=psycopg2.extras.RealDictCursor
            )
            return conn

        # Fall back to individual variables for local development
        conn = psycopg2.connect(
            host=os.environ.get('PGHOST'),
            database=os.environ.get('PGDATABASE'),
            user=os.environ.get('PGUSER'),
            password=os.environ.get('PGPASSWORD'),
            port=os.environ.get('PGPORT'),
            cursor_factory=psycopg2.extras.RealDictCursor
        )
        return conn
    except Exception as e:
        logger.error(f"Database connection error: {sanitize_for_log(e)}")
        return None


def is_unique_violation(error):
    """True when a psycopg2 error was raised by a UNIQUE constraint"""
    return isinstance(error, psycopg2.errors.UniqueViolation) or 'duplicate key' in str(error)
