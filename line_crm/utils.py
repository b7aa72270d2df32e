"""
Utility functions for the LINE CRM service.
"""

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)


def compute_line_signature(body: bytes, channel_secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of the raw body, as LINE sends in X-Line-Signature."""
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_line_signature(body: bytes, signature: str, channel_secret: str) -> bool:
    """
    Verify a LINE webhook signature.

    Args:
        body: Raw request body bytes
        signature: Value of the X-Line-Signature header
        channel_secret: LINE_CHANNEL_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not channel_secret or not signature:
        logger.info("HMAC signature verification: missing secret or signature")
        return False

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")
    expected_signature = compute_line_signature(body, channel_secret)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature.encode("utf-8"), signature.encode("utf-8"))
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
