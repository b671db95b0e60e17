"""
TenantSync waitlist: public signup form and a secret-protected listing
"""

import re
import hmac
import logging

from flask import Blueprint, request, jsonify
from flask_cors import cross_origin

from config.settings import get_settings
from shared.abuse_protection import (
    MAX_USER_AGENT_LENGTH,
    is_honeypot_triggered,
    validate_waitlist_email,
    get_client_ip,
    check_rate_limit,
)
from shared.database import get_db_connection
from shared.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

waitlist_bp = Blueprint('waitlist', __name__)

DEFAULT_SOURCE = 'landing-page'
SIGNUP_LIST_LIMIT = 100
SIGNUP_MESSAGE = "You're on the list!"


def origin_patterns(origins):
    """Allowed origins as patterns that also accept an explicit port"""
    return [re.escape(origin) + r'(:\d+)?' for origin in origins]


WAITLIST_ORIGINS = origin_patterns(get_settings().waitlist['allowed_origins'])


def _iso(value):
    return value.isoformat() if value else None


@waitlist_bp.route('/api/waitlist', methods=['GET', 'POST'])
@cross_origin(origins=WAITLIST_ORIGINS, methods=['GET', 'POST', 'OPTIONS'], allow_headers=['Content-Type'])
def waitlist():
    if request.method == 'POST':
        return join_waitlist()
    return list_waitlist()


def join_waitlist():
    """Add an email to the waitlist, or bump its signup count if already there"""
    data = request.get_json(silent=True) or {}

    # Accept silently so the bot sees nothing different
    if is_honeypot_triggered(data):
        logger.info("Waitlist honeypot triggered")
        return jsonify({'success': True, 'message': SIGNUP_MESSAGE}), 200

    email = data.get('email')
    valid, error = validate_waitlist_email(email)
    if not valid:
        return jsonify({'error': error}), 400

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        ip_address = get_client_ip(request)
        allowed, error = check_rate_limit(conn, ip_address)
        if not allowed:
            return jsonify({'error': error}), 429

        user_agent = (request.headers.get('User-Agent') or 'unknown')[:MAX_USER_AGENT_LENGTH]

        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO ts_waitlist (email, source, ip_address, user_agent)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (email) DO UPDATE SET
                updated_at = NOW(),
                signup_count = ts_waitlist.signup_count + 1
            RETURNING id, email, created_at
        """, (email.strip().lower(), data.get('source') or DEFAULT_SOURCE, ip_address, user_agent))
        signup = cursor.fetchone()
        conn.commit()

        logger.info(f"Waitlist signup: {sanitize_for_log(signup['email'])}")

        return jsonify({
            'success': True,
            'message': SIGNUP_MESSAGE,
            'signup': {
                'email': signup['email'],
                'created_at': _iso(signup['created_at'])
            }
        }), 200

    except Exception as e:
        conn.rollback()
        logger.error(f"Waitlist error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()


def list_waitlist():
    """Signup stats and the newest signups, for whoever holds the waitlist secret"""
    expected = get_settings().waitlist['secret']
    supplied = request.args.get('secret') or ''

    if not expected or not hmac.compare_digest(supplied.encode(), expected.encode()):
        return jsonify({'error': 'Unauthorized'}), 401

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT id, email, source, ip_address, created_at, signup_count, contacted
            FROM ts_waitlist
            ORDER BY created_at DESC
            LIMIT %s
        """, (SIGNUP_LIST_LIMIT,))
        signups = cursor.fetchall()

        cursor.execute("""
            SELECT
                COUNT(*) AS total,
                COUNT(CASE WHEN created_at > NOW() - INTERVAL '24 hours' THEN 1 END) AS last_24h,
                COUNT(CASE WHEN created_at > NOW() - INTERVAL '7 days' THEN 1 END) AS last_7d,
                COUNT(CASE WHEN contacted = true THEN 1 END) AS contacted
            FROM ts_waitlist
        """)
        stats = cursor.fetchone()

        return jsonify({
            'stats': {key: int(stats[key] or 0) for key in ('total', 'last_24h', 'last_7d', 'contacted')},
            'signups': [{
                'id': str(row['id']),
                'email': row['email'],
                'source': row['source'],
                'ip_address': row['ip_address'],
                'created_at': _iso(row['created_at']),
                'signup_count': row['signup_count'],
                'contacted': bool(row['contacted'])
            } for row in signups]
        }), 200

    except Exception as e:
        logger.error(f"Waitlist listing error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()
