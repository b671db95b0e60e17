#!/usr/bin/env python3
"""
Monthly Usage Reset Job
Runs on the 1st of each month to zero every user's monthly flow counter.
Should be scheduled via cron.
"""
import os
import sys
from datetime import datetime, timezone
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.database import get_db_connection
from shared.usage_meter import next_reset_date

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def reset_monthly_flows():
    """
    Reset flows_generated_this_month for all users.

    Returns:
        dict: success flag, number of users reset and the next reset date
    """
    conn = get_db_connection()
    if not conn:
        logger.error("Failed to get database connection")
        return {'success': False, 'error': 'Database connection failed'}

    try:
        cursor = conn.cursor()
        cursor.execute("""
            UPDATE users
            SET flows_generated_this_month = 0,
                updated_at = CURRENT_TIMESTAMP
            WHERE flows_generated_this_month > 0
        """)
        reset_count = cursor.rowcount
        conn.commit()

        today = datetime.now(timezone.utc).date()
        logger.info(f"Monthly reset complete: {reset_count} users reset on {today.isoformat()}")

        return {
            'success': True,
            'users_reset': reset_count,
            'reset_date': today.isoformat(),
            'next_reset_date': next_reset_date(today).isoformat()
        }

    except Exception as e:
        conn.rollback()
        logger.error(f"Monthly reset failed: {e}")
        return {'success': False, 'error': str(e)}
    finally:
        conn.close()


if __name__ == '__main__':
    result = reset_monthly_flows()

    if result['success']:
        print(f"✅ Monthly reset completed: {result['users_reset']} users")
        print(f"   Next reset: {result['next_reset_date']}")
    else:
        print(f"❌ Monthly reset failed: {result.get('error')}")
        sys.exit(1)
