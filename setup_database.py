#!/usr/bin/env python3
"""
Get Flowing / TenantSync Database Setup Script

Creates every table used by the API on the configured PostgreSQL database.
The schema uses CREATE ... IF NOT EXISTS, so re-running it is safe.

Usage:
    python setup_database.py [--schema database/schema.sql]

Requirements:
    - DATABASE_URL (or PGHOST/PGDATABASE/PGUSER/PGPASSWORD) set
"""

import sys
import logging
import argparse
from pathlib import Path

from shared.database import get_db_connection

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = Path(__file__).parent / 'database' / 'schema.sql'


def run_sql_script(schema_path=DEFAULT_SCHEMA):
    """Apply the schema file and list the resulting public tables"""
    sql_file = Path(schema_path)
    if not sql_file.exists():
        logger.error(f"SQL script not found: {sql_file}")
        return False

    conn = get_db_connection()
    if not conn:
        return False

    try:
        logger.info(f"Applying {sql_file}")
        cursor = conn.cursor()
        cursor.execute(sql_file.read_text())
        conn.commit()

        cursor.execute("""
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = 'public'
            ORDER BY table_name
        """)
        tables = [row['table_name'] for row in cursor.fetchall()]
        logger.info(f"Tables present: {', '.join(tables)}")
        return True

    except Exception as e:
        conn.rollback()
        logger.error(f"Database setup failed: {e}")
        return False
    finally:
        conn.close()


def main():
    parser = argparse.ArgumentParser(description='Create the Get Flowing / TenantSync tables')
    parser.add_argument('--schema', default=str(DEFAULT_SCHEMA), help='Path to the schema SQL file')
    args = parser.parse_args()

    if run_sql_script(args.schema):
        print("✅ Database setup complete!")
        sys.exit(0)
    else:
        print("❌ Database setup failed. Check the error messages above.")
        sys.exit(1)


if __name__ == "__main__":
    main()
