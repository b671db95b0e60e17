#!/usr/bin/env python3
"""
Daily Metrics Job
Upserts today's admin dashboard row in daily_metrics.
"""
import os
import sys
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.database import get_db_connection
from shared.pricing_config import SUBSCRIPTION_TIERS

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ACTIVE_USER_WINDOW_DAYS = 30


def update_daily_metrics():
    """
    Snapshot user, flow and revenue counts for today.

    MRR is the sum of monthly prices over active subscriptions.

    Returns:
        dict: success flag and the stored metrics row
    """
    conn = get_db_connection()
    if not conn:
        logger.error("Failed to get database connection")
        return {'success': False, 'error': 'Database connection failed'}

    try:
        cursor = conn.cursor()

        cursor.execute("""
            SELECT tier, COUNT(*) AS count
            FROM subscriptions
            WHERE status = 'active'
            GROUP BY tier
        """)
        mrr = sum(
            SUBSCRIPTION_TIERS.get(row['tier'], {}).get('price_monthly', 0) * int(row['count'])
            for row in cursor.fetchall()
        )

        cursor.execute("""
            INSERT INTO daily_metrics (
                date, total_users, active_users, new_signups, total_flows, mrr,
                free_tier_users, pro_tier_users, enterprise_tier_users
            )
            VALUES (
                CURRENT_DATE,
                (SELECT COUNT(*) FROM users WHERE is_active = true),
                (SELECT COUNT(*) FROM users WHERE last_login_at >= CURRENT_DATE - %s * INTERVAL '1 day'),
                (SELECT COUNT(*) FROM users WHERE DATE(created_at) = CURRENT_DATE),
                (SELECT COUNT(*) FROM flows WHERE DATE(created_at) = CURRENT_DATE),
                %s,
                (SELECT COUNT(*) FROM users WHERE subscription_tier = 'free' AND is_active = true),
                (SELECT COUNT(*) FROM users WHERE subscription_tier = 'pro' AND is_active = true),
                (SELECT COUNT(*) FROM users WHERE subscription_tier = 'enterprise' AND is_active = true)
            )
            ON CONFLICT (date) DO UPDATE SET
                total_users = EXCLUDED.total_users,
                active_users = EXCLUDED.active_users,
                new_signups = EXCLUDED.new_signups,
                total_flows = EXCLUDED.total_flows,
                mrr = EXCLUDED.mrr,
                free_tier_users = EXCLUDED.free_tier_users,
                pro_tier_users = EXCLUDED.pro_tier_users,
                enterprise_tier_users = EXCLUDED.enterprise_tier_users,
                created_at = CURRENT_TIMESTAMP
            RETURNING *
        """, (ACTIVE_USER_WINDOW_DAYS, mrr))
        metrics = cursor.fetchone()
        conn.commit()

        logger.info(f"Daily metrics updated for {metrics['date']}: {metrics['total_users']} users, MRR ${mrr}")
        return {'success': True, 'metrics': dict(metrics)}

    except Exception as e:
        conn.rollback()
        logger.error(f"Daily metrics update failed: {e}")
        return {'success': False, 'error': str(e)}
    finally:
        conn.close()


if __name__ == '__main__':
    result = update_daily_metrics()

    if result['success']:
        print(f"✅ Daily metrics updated for {result['metrics']['date']}")
    else:
        print(f"❌ Daily metrics update failed: {result.get('error')}")
        sys.exit(1)
