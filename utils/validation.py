"""
Input validation utilities for user data and API inputs.
"""

import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_GIFT_CODE_RE = re.compile(r"^[A-Z0-9]+(-[A-Z0-9]+)*$")


def validate_email(email: str) -> bool:
    """
    Validate email address format.

    Args:
        email: Email address string

    Returns:
        True if valid format, False otherwise
    """
    if not email or not isinstance(email, str):
        return False

    return bool(_EMAIL_RE.match(email))


def normalize_gift_code(code: str) -> str:
    """
    Normalize a human-entered gift card code.

    Codes are case-insensitive and may be typed with surrounding spaces.

    Raises:
        ValueError: If the code is empty or contains invalid characters
    """
    if not code or not isinstance(code, str):
        raise ValueError("Gift card code is required")

    normalized = code.strip().upper()
    if not _GIFT_CODE_RE.match(normalized):
        raise ValueError(f"Invalid gift card code: {code!r}")
    return normalized


def sanitize_text(text: str, max_length: Optional[int] = None) -> str:
    """
    Sanitize user input text.

    Args:
        text: Input text
        max_length: Optional maximum length

    Returns:
        Sanitized text
    """
    if not text:
        return ""

    # Remove control characters except newlines and tabs
    sanitized = re.sub(r"[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]", "", str(text))
    sanitized = sanitized.strip()

    if max_length and len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized
