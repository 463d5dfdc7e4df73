"""Shared validation utilities"""

import html
import re
import uuid
from typing import Optional

# Booking ids used by demo pages and client-side previews; must never reach Stripe
PLACEHOLDER_BOOKING_IDS = {"test-booking-id", "placeholder", "undefined", "null"}
PLACEHOLDER_BOOKING_PREFIXES = ("temp-", "test-", "demo-")


def validate_uuid(value: str) -> bool:
    """Validate UUID format"""
    try:
        uuid.UUID(str(value))
        return True
    except (ValueError, AttributeError):
        return False


def is_placeholder_booking_id(value: Optional[str]) -> bool:
    if value is None:
        return False
    lowered = str(value).strip().lower()
    return lowered in PLACEHOLDER_BOOKING_IDS or lowered.startswith(PLACEHOLDER_BOOKING_PREFIXES)


def validate_us_phone(phone: Optional[str]) -> Optional[str]:
    """
    Validate and normalize US phone number to E.164 format.

    Args:
        phone: Phone number string in various formats

    Returns:
        Normalized phone number in E.164 format (+1XXXXXXXXXX)

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone:
        return phone

    digits = re.sub(r"\D", "", phone)

    # Handle +1 prefix
    if digits.startswith("1") and len(digits) == 11:
        digits = digits[1:]

    if len(digits) != 10:
        raise ValueError("Phone number must be 10 digits for US numbers")

    return f"+1{digits}"


def validate_email(email: Optional[str]) -> Optional[str]:
    """
    Validate email format.

    Returns:
        Lowercase email address

    Raises:
        ValueError: If email format is invalid
    """
    if not email:
        return email

    email = email.strip().lower()

    email_pattern = r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$"

    if not re.match(email_pattern, email):
        raise ValueError("Invalid email format")

    return email


def sanitize_string(value: Optional[str], max_length: int = 500) -> Optional[str]:
    """Strip, truncate and HTML-escape free text before it is stored or emailed"""
    if value is None:
        return None
    value = str(value).strip()[:max_length]
    return html.escape(value, quote=True)
