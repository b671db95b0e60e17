"""
Stripe checkout, customer portal and subscription webhook handlers
"""

import logging
from datetime import datetime, timezone

import stripe
from flask import Blueprint, request, jsonify, g
from psycopg2.extras import Json

from config.settings import get_settings
from shared.auth_utils import require_auth
from shared.database import get_db_connection
from shared.log_sanitizer import sanitize_for_log
from shared.pricing_config import DEFAULT_TIER, PAID_TIERS

logger = logging.getLogger(__name__)

stripe_bp = Blueprint('stripe_billing', __name__)


def _configure_stripe(settings):
    stripe.api_key = settings.api_keys['stripe_secret_key']


def _to_datetime(timestamp):
    if not timestamp:
        return None
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc)


@stripe_bp.route('/api/stripe/create-checkout', methods=['POST'])
@require_auth
def create_checkout():
    """Create a subscription checkout session for the signed-in user"""
    data = request.get_json(silent=True) or {}
    price_id = data.get('priceId')
    tier = (data.get('tier') or '').lower()

    if not price_id or not tier:
        return jsonify({'error': 'Missing required fields'}), 400
    if tier not in PAID_TIERS:
        return jsonify({'error': f'Invalid tier: {tier}'}), 400

    settings = get_settings()
    _configure_stripe(settings)
    user_id = g.current_user['user_id']

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT id, email, stripe_customer_id FROM users WHERE id = %s
        """, (user_id,))
        user = cursor.fetchone()

        if not user:
            return jsonify({'error': 'User not found'}), 404

        customer_id = user['stripe_customer_id']
        if not customer_id:
            customer = stripe.Customer.create(
                email=user['email'],
                metadata={'user_id': str(user['id'])}
            )
            customer_id = customer.id

            cursor.execute("""
                UPDATE users SET stripe_customer_id = %s, updated_at = NOW() WHERE id = %s
            """, (customer_id, user_id))
            conn.commit()
            logger.info(f"Created Stripe customer for user {user_id}")

        session = stripe.checkout.Session.create(
            customer=customer_id,
            payment_method_types=['card'],
            line_items=[{'price': price_id, 'quantity': 1}],
            mode='subscription',
            success_url=settings.urls['checkout_success_url'],
            cancel_url=settings.urls['checkout_cancel_url'],
            metadata={'user_id': str(user['id']), 'tier': tier}
        )

        return jsonify({'sessionId': session.id, 'url': session.url}), 200

    except stripe.StripeError as e:
        logger.error(f"Stripe checkout error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Failed to create checkout session'}), 500
    except Exception as e:
        logger.error(f"Checkout error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Failed to create checkout session'}), 500
    finally:
        conn.close()


@stripe_bp.route('/api/stripe/create-portal-session', methods=['POST'])
@require_auth
def create_portal_session():
    """Create a Stripe Customer Portal session for subscription management"""
    settings = get_settings()
    _configure_stripe(settings)
    user_id = g.current_user['user_id']

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT stripe_subscription_id FROM subscriptions
            WHERE user_id = %s AND status = 'active'
            ORDER BY created_at DESC
            LIMIT 1
        """, (user_id,))
        subscription = cursor.fetchone()

        if not subscription:
            return jsonify({
                'error': 'No active subscription',
                'message': 'You need an active subscription to manage billing'
            }), 400

        stripe_subscription = stripe.Subscription.retrieve(subscription['stripe_subscription_id'])

        session = stripe.billing_portal.Session.create(
            customer=stripe_subscription['customer'],
            return_url=settings.urls['portal_return_url']
        )

        logger.info(f"Created Customer Portal session for user {user_id}")
        return jsonify({'url': session.url}), 200

    except stripe.StripeError as e:
        logger.error(f"Stripe error creating portal session: {sanitize_for_log(e)}")
        return jsonify({'error': 'Unable to access billing portal'}), 500
    except Exception as e:
        logger.error(f"Create portal session error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()


@stripe_bp.route('/api/stripe/webhook', methods=['POST'])
def stripe_webhook():
    """
    Handle Stripe webhook events for subscription management.
    Supports: checkout.session.completed, customer.subscription.updated/deleted,
    invoice.payment_succeeded/failed with idempotency protection.
    """
    settings = get_settings()
    _configure_stripe(settings)

    payload = request.get_data()
    sig_header = request.headers.get('Stripe-Signature')
    webhook_secret = settings.api_keys['stripe_webhook_secret']

    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        return jsonify({'error': 'Webhook not configured'}), 500

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {sanitize_for_log(e)}")
        return jsonify({'error': 'Invalid payload'}), 400
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {sanitize_for_log(e)}")
        return jsonify({'error': 'Invalid signature'}), 400

    event_type = event['type']
    event_id = event['id']

    logger.info(f"Received Stripe webhook: {event_type} ({event_id})")

    conn = get_db_connection()
    if not conn:
        logger.error("Database connection failed for webhook processing")
        return jsonify({'error': 'Database unavailable'}), 500

    try:
        cursor = conn.cursor()

        # Have we already processed this event?
        cursor.execute("""
            SELECT id FROM stripe_webhook_events
            WHERE event_id = %s
        """, (event_id,))

        if cursor.fetchone():
            logger.info(f"Event {event_id} already processed (idempotent)")
            return jsonify({'received': True, 'status': 'already_processed'}), 200

        cursor.execute("""
            INSERT INTO stripe_webhook_events (event_id, event_type, processed_at)
            VALUES (%s, %s, NOW())
        """, (event_id, event_type))

        handler = WEBHOOK_HANDLERS.get(event_type)
        if handler:
            handler(event, conn)
        else:
            logger.info(f"Unhandled webhook event type: {event_type}")

        conn.commit()
        return jsonify({'received': True, 'status': 'processed'}), 200

    except Exception as e:
        conn.rollback()
        logger.error(f"Webhook processing error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Webhook handler failed'}), 500
    finally:
        conn.close()


def handle_checkout_completed(event, conn):
    """Record the new subscription and move the user to the purchased tier"""
    session = event['data']['object']
    metadata = session.get('metadata') or {}
    user_id = metadata.get('user_id')
    tier = metadata.get('tier')

    if not user_id or not tier or not session.get('subscription'):
        logger.error(f"Missing metadata in checkout session: {session.get('id')}")
        return

    subscription = stripe.Subscription.retrieve(session['subscription'])
    item = subscription['items']['data'][0]

    # Newer API versions report the billing period on the subscription item
    period_start = subscription.get('current_period_start') or item.get('current_period_start')
    period_end = subscription.get('current_period_end') or item.get('current_period_end')

    cursor = conn.cursor()
    cursor.execute("""
        INSERT INTO subscriptions (
            user_id, stripe_subscription_id, stripe_price_id, tier, status,
            current_period_start, current_period_end
        ) VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (stripe_subscription_id) DO UPDATE SET
            status = EXCLUDED.status,
            tier = EXCLUDED.tier,
            current_period_start = EXCLUDED.current_period_start,
            current_period_end = EXCLUDED.current_period_end,
            updated_at = CURRENT_TIMESTAMP
    """, (
        user_id,
        subscription['id'],
        item['price']['id'],
        tier,
        subscription['status'],
        _to_datetime(period_start),
        _to_datetime(period_end)
    ))

    cursor.execute("""
        UPDATE users SET subscription_tier = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s
    """, (tier, user_id))

    cursor.execute("""
        INSERT INTO usage_logs (user_id, action_type, metadata)
        VALUES (%s, 'subscription_created', %s)
    """, (user_id, Json({'tier': tier, 'subscriptionId': subscription['id']})))

    logger.info(f"Subscription created for user {user_id}: {tier}")


def handle_subscription_updated(event, conn):
    subscription = event['data']['object']

    cursor = conn.cursor()
    cursor.execute("""
        UPDATE subscriptions
        SET status = %s,
            current_period_end = COALESCE(%s, current_period_end),
            cancel_at_period_end = %s,
            updated_at = CURRENT_TIMESTAMP
        WHERE stripe_subscription_id = %s
    """, (
        subscription['status'],
        _to_datetime(subscription.get('current_period_end')),
        bool(subscription.get('cancel_at_period_end')),
        subscription['id']
    ))

    logger.info(f"Subscription updated: {subscription['id']}")


def handle_subscription_deleted(event, conn):
    """Mark the subscription canceled and downgrade its user to the free tier"""
    subscription = event['data']['object']

    cursor = conn.cursor()
    cursor.execute("""
        UPDATE subscriptions
        SET status = 'canceled', updated_at = CURRENT_TIMESTAMP
        WHERE stripe_subscription_id = %s
        RETURNING user_id
    """, (subscription['id'],))
    row = cursor.fetchone()

    if not row:
        logger.warning(f"No subscription row for deleted Stripe subscription {subscription['id']}")
        return

    cursor.execute("""
        UPDATE users SET subscription_tier = %s, updated_at = CURRENT_TIMESTAMP WHERE id = %s
    """, (DEFAULT_TIER, row['user_id']))

    logger.info(f"User {row['user_id']} downgraded to {DEFAULT_TIER} tier")


def handle_payment_succeeded(event, conn):
    invoice = event['data']['object']
    logger.info(f"Payment succeeded: {invoice['id']}")


def handle_payment_failed(event, conn):
    invoice = event['data']['object']
    logger.warning(f"Payment failed: {invoice['id']}")


WEBHOOK_HANDLERS = {
    'checkout.session.completed': handle_checkout_completed,
    'customer.subscription.updated': handle_subscription_updated,
    'customer.subscription.deleted': handle_subscription_deleted,
    'invoice.payment_succeeded': handle_payment_succeeded,
    'invoice.payment_failed': handle_payment_failed,
}
