"""
Webhook Security Module

Signature verification for the scheduler webhooks:
- Constant-time signature comparison
- Timestamp validation against replays
"""

import hashlib
import hmac
import logging
import time
from typing import Optional

from fastapi import HTTPException, Request

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300

CAL_SIGNATURE_HEADER = "X-Cal-Signature-256"
CALENDLY_SIGNATURE_HEADER = "Calendly-Webhook-Signature"


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_timestamp(timestamp: Optional[str], max_age: int = MAX_WEBHOOK_AGE_SECONDS) -> bool:
    """
    Verify webhook timestamp is within acceptable range.

    Args:
        timestamp: Unix timestamp as string
        max_age: Maximum age in seconds

    Returns:
        True if timestamp is valid, False otherwise
    """
    if not timestamp:
        return False

    try:
        age = abs(int(time.time()) - int(timestamp))
    except (ValueError, TypeError):
        logger.warning(f"🚫 Invalid webhook timestamp format: {timestamp}")
        return False

    if age > max_age:
        logger.warning(f"🚫 Webhook timestamp too old: {age}s (max: {max_age}s)")
        return False
    return True


async def verify_cal_webhook(
    request: Request, secret: Optional[str], raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify a Cal.com webhook.

    Cal.com sends 'X-Cal-Signature-256' holding the hex HMAC-SHA256 of the raw
    body keyed with the webhook secret. The header is always required; the HMAC
    is only checked when a secret is configured.

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature_header = request.headers.get(CAL_SIGNATURE_HEADER, "")

    if not signature_header:
        logger.warning("🚫 Cal.com webhook missing signature header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    if not secret:
        logger.warning("⚠️ CAL_WEBHOOK_SECRET not configured - signature verification skipped")
        return True, raw_body

    expected_signature = compute_hmac_sha256(secret, raw_body)
    if not constant_time_compare(expected_signature, signature_header.strip().lower()):
        logger.warning("🚫 Cal.com webhook signature mismatch")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug("✅ Cal.com webhook signature verified")
    return True, raw_body


async def verify_calendly_webhook(
    request: Request, secret: str, raise_on_failure: bool = True
) -> tuple[bool, bytes]:
    """
    Verify Calendly webhook signature.

    Calendly uses:
    - Header: 'Calendly-Webhook-Signature' (format: "t=<timestamp>,v1=<hex_digest>")
    - Signed payload: "<timestamp>.<raw body>"

    Returns:
        Tuple of (is_valid, raw_body)
    """
    raw_body = await request.body()
    signature_header = request.headers.get(CALENDLY_SIGNATURE_HEADER, "")

    if not signature_header:
        logger.warning("🚫 Calendly webhook missing signature header")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Missing webhook signature")
        return False, raw_body

    try:
        elements = dict(item.split("=", 1) for item in signature_header.split(","))
    except ValueError:
        elements = {}
    timestamp = elements.get("t")
    signature = elements.get("v1")

    if not timestamp or not signature:
        logger.warning("🚫 Calendly webhook invalid signature format")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid signature format")
        return False, raw_body

    if not verify_timestamp(timestamp):
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Webhook timestamp expired")
        return False, raw_body

    # Bodies are not assumed to be UTF-8
    expected_signature = compute_hmac_sha256(secret, timestamp.encode() + b"." + raw_body)

    if not constant_time_compare(expected_signature, signature):
        logger.warning("🚫 Calendly webhook signature mismatch")
        if raise_on_failure:
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        return False, raw_body

    logger.debug("✅ Calendly webhook signature verified")
    return True, raw_body


def create_webhook_signature(secret: str, payload: bytes, provider: str = "cal") -> str:
    """
    Create a webhook signature for testing or replaying deliveries.

    Args:
        secret: Signing secret
        payload: Request body bytes
        provider: Provider format ('cal', 'calendly')

    Returns:
        Signature string in provider's format
    """
    if provider == "calendly":
        timestamp = int(time.time())
        signed_payload = str(timestamp).encode() + b"." + payload
        return f"t={timestamp},v1={compute_hmac_sha256(secret, signed_payload)}"
    return compute_hmac_sha256(secret, payload)
