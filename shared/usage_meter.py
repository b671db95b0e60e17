"""
Usage Meter Service for Get Flowing
Handles monthly flow allowances, usage counters and the usage log
"""

import logging
from datetime import date

from dateutil.relativedelta import relativedelta
from psycopg2.extras import Json

from shared.pricing_config import get_flow_limit

logger = logging.getLogger(__name__)


def next_reset_date(today=None):
    """First day of the month after `today`; monthly counters reset then"""
    today = today or date.today()
    return today.replace(day=1) + relativedelta(months=1)


class UsageMeter:
    """
    Tracks flow generation against the user's subscription tier
    """

    def __init__(self, conn):
        """
        Args:
            conn: Open database connection; the caller commits and closes it.
        """
        self.conn = conn

    def get_user(self, user_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT id, email, subscription_tier, flows_generated_this_month, total_flows_generated
            FROM users
            WHERE id = %s
        """, (user_id,))
        return cursor.fetchone()

    def check_usage_limit(self, user_id):
        """
        Check whether a user may generate another flow this month

        Args:
            user_id (str): User ID

        Returns:
            dict: tier, limit, used, remaining, can_generate

        Raises:
            LookupError: if the user does not exist
        """
        user = self.get_user(user_id)
        if not user:
            raise LookupError(f"User {user_id} not found")

        return self.usage_for(user)

    @staticmethod
    def usage_for(user):
        """Usage summary for a users row"""
        tier = user['subscription_tier'] or 'free'
        limit = get_flow_limit(tier)
        used = user['flows_generated_this_month'] or 0
        remaining = limit - used

        return {
            'tier': tier,
            'limit': limit,
            'used': used,
            'remaining': remaining,
            'can_generate': remaining > 0
        }

    def increment_flow_count(self, user_id):
        cursor = self.conn.cursor()
        cursor.execute("""
            UPDATE users
            SET flows_generated_this_month = flows_generated_this_month + 1,
                total_flows_generated = total_flows_generated + 1,
                updated_at = CURRENT_TIMESTAMP
            WHERE id = %s
        """, (user_id,))

    def log_usage(self, user_id, action_type, metadata=None):
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO usage_logs (user_id, action_type, metadata)
            VALUES (%s, %s, %s)
        """, (user_id, action_type, Json(metadata or {})))

    def record_flow(self, user_id, flow_name, prompt, flow, tokens_used, generation_time):
        """
        Store a generated flow and count it against the user's allowance

        Returns:
            str: ID of the new flows row
        """
        cursor = self.conn.cursor()
        cursor.execute("""
            INSERT INTO flows (
                user_id, flow_name, prompt, generated_json, tokens_used,
                generation_time_seconds, success
            ) VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
        """, (user_id, flow_name, prompt, Json(flow), tokens_used, generation_time, True))
        flow_id = cursor.fetchone()['id']

        self.increment_flow_count(user_id)
        self.log_usage(user_id, 'flow_generated', {
            'flowId': str(flow_id),
            'tokensUsed': tokens_used,
            'generationTime': generation_time
        })

        logger.info(f"Recorded flow {flow_id} for user {user_id}")
        return flow_id
