"""
Log sanitization utility for removing credentials and PII from log messages.

Handlers log exceptions and request values that may contain API keys,
session tokens, emails or card numbers. Everything passed to the logger
from a request path goes through sanitize_for_log() first.
"""

import re
from typing import Any


def sanitize_for_log(message: Any, max_length: int = 200) -> str:
    """
    Sanitize a message for safe logging by removing credentials and PII.

    This function:
    - Converts the message to string
    - Replaces CR/LF and other control characters so one call is one log line
    - Truncates very long messages (likely package or prompt payloads)
    - Masks TenantSync API keys, bearer tokens and JWTs
    - Masks emails and card-like digit runs

    Args:
        message: The message to sanitize (can be string, Exception, or any object)
        max_length: Maximum length of sanitized message (default: 200 chars)

    Returns:
        Sanitized string safe for logging

    Examples:
        >>> sanitize_for_log("Bad key ts_live_0123456789abcdef0123456789abcdef0123456789abcdef")
        'Bad key ts_live_[REDACTED]'

        >>> sanitize_for_log("Failed for user@example.com")
        'Failed for [EMAIL]'
    """
    text = re.sub(r"[\r\n\x00-\x1f\x7f]", " ", str(message))

    if len(text) > max_length:
        text = text[:max_length] + "... [truncated]"

    sanitized = text

    # TenantSync API keys
    sanitized = re.sub(r'\bts_live_[0-9a-fA-F]+', 'ts_live_[REDACTED]', sanitized)

    # Bearer tokens
    sanitized = re.sub(r'(?i)\bbearer\s+[A-Za-z0-9._~+/=-]+', 'Bearer [REDACTED]', sanitized)

    # Bare JWTs (header.payload.signature)
    sanitized = re.sub(
        r'\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+',
        '[JWT]',
        sanitized
    )

    # Stripe secret keys
    sanitized = re.sub(r'\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]+', r'\1_[REDACTED]', sanitized)

    # Credit card numbers (13-19 digits, possibly with spaces/dashes)
    sanitized = re.sub(
        r'\b(?:\d[ -]*?){13,19}\b',
        '[CARD]',
        sanitized
    )

    # Email addresses
    sanitized = re.sub(
        r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b',
        '[EMAIL]',
        sanitized
    )

    return sanitized


def sanitize_exception_for_db(exception: Exception, max_length: int = 500) -> str:
    """
    Sanitize an exception message for storage in usage_logs metadata.

    Returns error type + sanitized message suitable for support/debugging.

    Example:
        >>> sanitize_exception_for_db(ValueError("Bad email bob@example.com"))
        'ValueError: Bad email [EMAIL]'
    """
    error_type = type(exception).__name__
    error_message = sanitize_for_log(str(exception), max_length=max_length)

    return f"{error_type}: {error_message}"
