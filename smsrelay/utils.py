"""
Utility functions for inbound provider callbacks.
"""

import hmac
import hashlib
import logging

logger = logging.getLogger(__name__)


def sign_body(body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of the raw body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature:
        logger.info("Callback signature missing")
        return False

    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    # Constant-time comparison; bytes so a non-ASCII header is just a mismatch
    expected = sign_body(body, secret).encode("ascii")
    is_valid = hmac.compare_digest(expected, signature.encode("utf-8", "surrogateescape"))
    logger.info(f"Callback signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
