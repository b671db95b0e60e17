"""
Authentication utilities for the Get Flowing backend
Handles password hashing, session tokens, session cookies and route protection
"""

import re
import hmac
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from functools import wraps

import bcrypt
import jwt
from flask import request, jsonify, g

from config.settings import get_settings

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = 'auth_token'
SESSION_MAX_AGE_SECONDS = 7 * 24 * 60 * 60  # 7 days
MIN_PASSWORD_LENGTH = 8
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

# Hashes written before the bcrypt migration: "<hex salt>:<hex pbkdf2-sha512>"
LEGACY_PBKDF2_ITERATIONS = 10000
LEGACY_PBKDF2_KEY_LENGTH = 64


# Password management functions
def hash_password(password):
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    password_hash = bcrypt.hashpw(password.encode('utf-8'), salt)
    return password_hash.decode('utf-8')


def verify_password(password, password_hash):
    """Verify a password against its stored hash (bcrypt or legacy PBKDF2)"""
    if not password or not password_hash:
        return False

    if password_hash.startswith('$2'):
        try:
            return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
        except ValueError:
            return False

    return _verify_legacy_password(password, password_hash)


def _verify_legacy_password(password, stored_hash):
    salt, sep, expected = stored_hash.partition(':')
    if not sep or not salt or not expected:
        return False

    derived = hashlib.pbkdf2_hmac(
        'sha512',
        password.encode('utf-8'),
        salt.encode('utf-8'),
        LEGACY_PBKDF2_ITERATIONS,
        dklen=LEGACY_PBKDF2_KEY_LENGTH
    ).hex()
    return hmac.compare_digest(derived, expected)


def normalize_email(email):
    """Lower-case and trim an email address; empty string if unusable"""
    if not email or not isinstance(email, str):
        return ""
    return email.strip().lower()


def is_valid_email(email):
    return bool(email) and bool(EMAIL_PATTERN.match(email))


def validate_signup(email, password):
    """
    Validate signup input

    Returns:
        tuple: (valid: bool, error_message: str)
    """
    if not email or not password:
        return False, "Email and password required"

    if len(password) < MIN_PASSWORD_LENGTH:
        return False, f"Password must be at least {MIN_PASSWORD_LENGTH} characters"

    if not is_valid_email(email):
        return False, "Invalid email address"

    return True, None


# Session tokens
def create_token(user_id, email):
    """Create a signed session token valid for 7 days"""
    now = datetime.now(timezone.utc)
    return jwt.encode({
        'user_id': str(user_id),
        'email': email,
        'iat': now,
        'exp': now + timedelta(seconds=SESSION_MAX_AGE_SECONDS),
        'purpose': 'access',
    }, get_settings().api_keys['jwt_secret'], algorithm='HS256')


def verify_token(token):
    """Verify and decode a session token"""
    try:
        payload = jwt.decode(token, get_settings().api_keys['jwt_secret'], algorithms=['HS256'])
    except jwt.ExpiredSignatureError:
        return {'error': 'Token has expired'}
    except jwt.InvalidTokenError:
        return {'error': 'Invalid token'}

    if payload.get('purpose') != 'access' or not payload.get('user_id'):
        return {'error': 'Invalid token'}
    return payload


def get_request_token(req=None):
    """Session token from the Authorization header or the session cookie"""
    req = req or request
    auth_header = req.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        token = auth_header[len('Bearer '):].strip()
        if token:
            return token
    return req.cookies.get(SESSION_COOKIE_NAME)


def set_session_cookie(response, token):
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=SESSION_MAX_AGE_SECONDS,
        path='/',
        httponly=True,
        secure=True,
        samesite='Lax'
    )
    return response


def clear_session_cookie(response):
    response.set_cookie(
        SESSION_COOKIE_NAME,
        '',
        max_age=0,
        path='/',
        httponly=True,
        secure=True,
        samesite='Lax'
    )
    return response


def require_auth(view):
    """
    Reject requests without a valid session token.

    The decoded token payload is available to the view as g.current_user.
    """
    @wraps(view)
    def wrapper(*args, **kwargs):
        token = get_request_token()
        if not token:
            return jsonify({'error': 'Not authenticated'}), 401

        payload = verify_token(token)
        if 'error' in payload:
            return jsonify({'error': payload['error']}), 401

        g.current_user = payload
        return view(*args, **kwargs)

    return wrapper
