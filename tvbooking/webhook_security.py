"""
Webhook Security Module

Stripe signature verification:
- Signed payload is "{t}.{raw body}", HMAC-SHA256 with the endpoint secret
- Constant-time comparison against every v1 signature in the header
- Timestamp tolerance rejects replayed events
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

from .config import STRIPE_WEBHOOK_TOLERANCE

logger = logging.getLogger(__name__)


def constant_time_compare(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: Optional[str], max_age: int = STRIPE_WEBHOOK_TOLERANCE, now: Optional[int] = None) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds
        now: Current unix time (tests)
    """
    if not timestamp:
        return False
    try:
        age = abs((now or int(time.time())) - int(timestamp))
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False
    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


def parse_stripe_signature(header: str) -> tuple[Optional[str], list]:
    """'t=123,v1=abc,v1=def' → ('123', ['abc', 'def'])"""
    timestamp = None
    signatures = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures


def sign_stripe_payload(secret: str, timestamp: int, body: bytes) -> str:
    """Build a Stripe-Signature header value for a payload"""
    signed = f"{timestamp}.".encode("utf-8") + body
    return f"t={timestamp},v1={compute_hmac_sha256(secret, signed)}"


def verify_stripe_signature(
    body: bytes,
    header: str,
    secret: str,
    tolerance: int = STRIPE_WEBHOOK_TOLERANCE,
    now: Optional[int] = None,
) -> bool:
    timestamp, signatures = parse_stripe_signature(header)
    if not timestamp or not signatures:
        logger.error("❌ Stripe-Signature header missing timestamp or v1 signature")
        return False
    if not verify_timestamp(timestamp, tolerance, now=now):
        return False
    expected = compute_hmac_sha256(secret, f"{timestamp}.".encode("utf-8") + body)
    if any(constant_time_compare(expected, candidate) for candidate in signatures):
        return True
    logger.error("❌ Stripe webhook signature mismatch")
    return False


async def verify_stripe_webhook(
    request: Request, secret: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify a Stripe webhook request.

    Returns:
        Tuple of (is_valid, raw_body)
    """
    # Raw body before any parsing; the signature covers the exact bytes
    raw_body = await request.body()
    if not secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured; rejecting webhook")
        if raise_on_failure:
            raise HTTPException(status_code=503, detail="Webhook endpoint not configured")
        return False, raw_body

    valid = verify_stripe_signature(raw_body, request.headers.get("stripe-signature", ""), secret)
    if not valid and raise_on_failure:
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    return valid, raw_body
