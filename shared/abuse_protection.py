"""
Waitlist Abuse Prevention
Protects the public waitlist form through a honeypot, input checks,
disposable-domain blocking and per-IP rate limiting
"""

import re
import logging
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

# Rate Limiting Configuration
RATE_LIMIT_WINDOW_MINUTES = 60
MAX_SIGNUPS_PER_IP = 5

MAX_EMAIL_LENGTH = 254
MAX_USER_AGENT_LENGTH = 500
EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

DISPOSABLE_DOMAINS = frozenset([
    'mailinator.com', 'guerrillamail.com', 'tempmail.com',
    'throwaway.email', 'yopmail.com', 'sharklasers.com', 'guerrillamailblock.com',
    'grr.la', 'dispostable.com', '10minutemail.com', 'trashmail.com'
])


def is_honeypot_triggered(data):
    """Bots fill every field, including the hidden 'website' one"""
    return bool((data or {}).get('website'))


def validate_waitlist_email(email):
    """
    Validate a waitlist email address

    Returns:
        tuple: (valid: bool, error_message: str)
    """
    if not email or not isinstance(email, str):
        return False, 'Valid email required'

    # Absurdly long input is a bot payload
    if len(email) > MAX_EMAIL_LENGTH:
        return False, 'Valid email required'

    if not EMAIL_PATTERN.match(email):
        return False, 'Valid email required'

    domain = email.split('@')[1].strip().lower()
    if domain in DISPOSABLE_DOMAINS:
        return False, 'Please use a work or personal email'

    return True, None


def get_client_ip(req):
    """Client IP as reported by the serverless platform's proxy headers"""
    forwarded = req.headers.get('X-Forwarded-For', '')
    if forwarded:
        first = forwarded.split(',')[0].strip()
        if first:
            return first
    return req.headers.get('X-Real-IP') or req.remote_addr or 'unknown'


def check_rate_limit(conn, ip_address):
    """
    Check if an IP has exceeded the waitlist signup rate limit

    Args:
        conn: Database connection
        ip_address (str): Client IP address

    Returns:
        tuple: (allowed: bool, error_message: str)
    """
    cursor = conn.cursor()
    cutoff_time = datetime.now(timezone.utc) - timedelta(minutes=RATE_LIMIT_WINDOW_MINUTES)

    cursor.execute("""
        SELECT COUNT(*) AS cnt FROM ts_waitlist
        WHERE ip_address = %s AND created_at > %s
    """, (ip_address, cutoff_time))

    attempts = int(cursor.fetchone()['cnt'])

    if attempts >= MAX_SIGNUPS_PER_IP:
        logger.warning(f"Waitlist rate limit exceeded for IP {ip_address}: {attempts} signups")
        return False, 'Too many requests. Try again later.'

    return True, None
