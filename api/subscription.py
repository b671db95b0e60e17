"""
Subscription summary for the signed-in user's dashboard
"""

import logging

from flask import Blueprint, jsonify, g

from shared.auth_utils import require_auth
from shared.database import get_db_connection
from shared.log_sanitizer import sanitize_for_log
from shared.pricing_config import get_tier_limits
from shared.usage_meter import UsageMeter, next_reset_date

logger = logging.getLogger(__name__)

subscription_bp = Blueprint('subscription', __name__)

RECENT_FLOWS_LIMIT = 5


def _iso(value):
    return value.isoformat() if value else None


@subscription_bp.route('/api/user/subscription', methods=['GET'])
@require_auth
def get_subscription():
    """Tier, usage counters, recent flows and active subscription"""
    user_id = g.current_user['user_id']

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        meter = UsageMeter(conn)
        user = meter.get_user(user_id)
        if not user:
            return jsonify({'error': 'User not found'}), 404

        cursor = conn.cursor()
        cursor.execute("""
            SELECT flow_name, created_at, success
            FROM flows
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
        """, (user_id, RECENT_FLOWS_LIMIT))
        recent_flows = cursor.fetchall()

        cursor.execute("""
            SELECT stripe_subscription_id, tier, current_period_end, cancel_at_period_end
            FROM subscriptions
            WHERE user_id = %s AND status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
        """, (user_id,))
        subscription = cursor.fetchone()

        usage = meter.usage_for(user)

        return jsonify({
            'tier': usage['tier'],
            'flowsThisMonth': usage['used'],
            'totalFlows': user['total_flows_generated'] or 0,
            'remaining': max(usage['remaining'], 0),
            'recentFlows': [{
                'name': flow['flow_name'],
                'createdAt': _iso(flow['created_at']),
                'status': 'completed' if flow['success'] else 'failed'
            } for flow in recent_flows],
            'subscription': {
                'stripeSubscriptionId': subscription['stripe_subscription_id'],
                'tier': subscription['tier'],
                'currentPeriodEnd': _iso(subscription['current_period_end']),
                'cancelAtPeriodEnd': bool(subscription['cancel_at_period_end'])
            } if subscription else None,
            'limits': get_tier_limits(),
            'nextResetDate': next_reset_date().isoformat()
        }), 200

    except Exception as e:
        logger.error(f"Error fetching user subscription: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()
