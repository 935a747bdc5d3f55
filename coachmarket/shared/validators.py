"""Shared validation utilities"""

import re
from datetime import datetime, timezone
from typing import Optional, Union

ULID_PATTERN = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def validate_ulid(value: Optional[str]) -> bool:
    """Validate ULID format (26 chars, Crockford base32)"""
    if not value or not isinstance(value, str):
        return False
    return bool(ULID_PATTERN.match(value))


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Lowercased email

    Raises:
        ValueError: If email is invalid
    """
    if not email:
        return email

    email = email.strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValueError("Invalid email format")
    return email


def parse_datetime(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO 8601 string, epoch milliseconds or datetime into a naive UTC datetime.

    Returns None when the value is missing or cannot be parsed.
    """
    if value is None or value == "":
        return None

    try:
        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, (int, float)):
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        elif isinstance(value, str) and value.strip().isdigit():
            parsed = datetime.fromtimestamp(int(value.strip()) / 1000, tz=timezone.utc)
        else:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError, OverflowError, OSError):
        return None

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Format a naive UTC datetime as an ISO 8601 string with Z suffix"""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.isoformat(timespec="milliseconds") + "Z"
