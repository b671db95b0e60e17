"""
Auth handler: signup, signin, signout and session lookup, routed by ?action=
"""

import logging

from flask import Blueprint, request, jsonify
from psycopg2.extras import Json

from shared.auth_utils import (
    hash_password,
    verify_password,
    normalize_email,
    validate_signup,
    create_token,
    verify_token,
    get_request_token,
    set_session_cookie,
    clear_session_cookie,
)
from shared.database import get_db_connection, is_unique_violation
from shared.log_sanitizer import sanitize_for_log

logger = logging.getLogger(__name__)

auth_bp = Blueprint('auth', __name__)


def _public_user(user):
    return {
        'id': str(user['id']),
        'email': user['email'],
        'name': user.get('name') or '',
        'tier': user.get('subscription_tier') or 'free'
    }


@auth_bp.route('/api/auth', methods=['GET', 'POST'])
def auth_handler():
    """Route auth requests based on the action query parameter"""
    action = request.args.get('action')

    if action == 'signup' and request.method == 'POST':
        return signup()
    if action == 'signin' and request.method == 'POST':
        return signin()
    if action == 'signout' and request.method == 'POST':
        return signout()
    if action == 'me' and request.method == 'GET':
        return me()

    return jsonify({'error': 'Not found'}), 404


def signup():
    """Handle user registration"""
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get('email'))
    password = data.get('password') or ''
    name = (data.get('name') or '').strip()

    valid, error = validate_signup(email, password)
    if not valid:
        return jsonify({'error': error}), 400

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        cursor = conn.cursor()
        cursor.execute("""
            INSERT INTO users (email, password_hash, name, subscription_tier, created_at)
            VALUES (%s, %s, %s, 'free', NOW())
            RETURNING id, email, name, subscription_tier
        """, (email, hash_password(password), name))
        user = cursor.fetchone()

        cursor.execute("""
            INSERT INTO usage_logs (user_id, action_type, metadata)
            VALUES (%s, 'signup', %s)
        """, (user['id'], Json({'name': name})))
        conn.commit()

        logger.info(f"New user registered: {user['id']}")

        response = jsonify({'success': True, 'user': _public_user(user)})
        set_session_cookie(response, create_token(user['id'], user['email']))
        return response, 200

    except Exception as e:
        conn.rollback()
        if is_unique_violation(e):
            return jsonify({'error': 'Email already exists'}), 400
        logger.error(f"Signup error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()


def signin():
    """Handle password sign-in"""
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get('email'))
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'error': 'Email and password required'}), 400

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT id, email, password_hash, name, subscription_tier, is_active
            FROM users
            WHERE email = %s
        """, (email,))
        user = cursor.fetchone()

        # Same answer for unknown email and wrong password
        if not user or user.get('is_active') is False or not verify_password(password, user['password_hash']):
            return jsonify({'error': 'Invalid email or password'}), 401

        cursor.execute("""
            UPDATE users SET last_login_at = NOW() WHERE id = %s
        """, (user['id'],))
        conn.commit()

        response = jsonify({'success': True, 'user': _public_user(user)})
        set_session_cookie(response, create_token(user['id'], user['email']))
        return response, 200

    except Exception as e:
        conn.rollback()
        logger.error(f"Signin error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()


def signout():
    response = jsonify({'success': True})
    clear_session_cookie(response)
    return response, 200


def me():
    """Return the signed-in user"""
    token = get_request_token()
    if not token:
        return jsonify({'error': 'Not authenticated'}), 401

    payload = verify_token(token)
    if 'error' in payload:
        return jsonify({'error': 'Invalid token'}), 401

    conn = get_db_connection()
    if not conn:
        return jsonify({'error': 'Database connection failed'}), 500

    try:
        cursor = conn.cursor()
        cursor.execute("""
            SELECT id, email, name, subscription_tier, created_at
            FROM users
            WHERE id = %s
        """, (payload['user_id'],))
        user = cursor.fetchone()

        if not user:
            return jsonify({'error': 'User not found'}), 401

        body = _public_user(user)
        body['createdAt'] = user['created_at'].isoformat() if user.get('created_at') else None
        return jsonify({'user': body}), 200

    except Exception as e:
        logger.error(f"Me error: {sanitize_for_log(e)}")
        return jsonify({'error': 'Internal server error'}), 500
    finally:
        conn.close()
