"""
Utility functions for the messenger relay.
"""

import hmac
import logging
import re
import secrets
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

CODE_DIGITS = 5

# Permissive phone-character pattern used to decide whether a search query
# should produce a "new contact" placeholder.
PHONE_QUERY_PATTERN = re.compile(r"^[+\d\s\-()]+$")
PHONE_QUERY_MIN_LENGTH = 5
_PHONE_SEPARATORS = re.compile(r"[\s\-()]")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with millisecond precision and Z suffix."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def generate_code(digits: int = CODE_DIGITS) -> str:
    """Draw a code uniformly from the fixed-width numeric space of `digits` digits."""
    lower = 10 ** (digits - 1)
    return str(lower + secrets.randbelow(9 * lower))


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def codes_match(expected: str, candidate: str) -> bool:
    """
    Compare a stored verification code with a submitted one.

    Uses constant-time comparison to prevent timing attacks.
    """
    return hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8"))


def looks_like_phone_number(query: str) -> bool:
    return len(query) >= PHONE_QUERY_MIN_LENGTH and bool(PHONE_QUERY_PATTERN.match(query))


def clean_phone_query(query: str) -> str:
    """Strip spaces, dashes and parentheses from a phone-like query."""
    return _PHONE_SEPARATORS.sub("", query)
