"""
Utility functions for the chat relay.
"""

import hmac
import hashlib
import logging
import secrets
import string
import time

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw request body bytes
        signature: Hex-encoded signature from X-Signature header,
            optionally prefixed with "sha256=" as providers send it
        secret: WEBHOOK_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Body length: {len(body)} bytes, signature: {signature[:8]}...")

    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


def generate_message_id() -> str:
    """Locally-originated message id: msg_<epoch millis>_<9 base36 chars>."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"msg_{int(time.time() * 1000)}_{suffix}"


def placeholder_name(contact_id: str) -> str:
    """Display name for a contact the provider sent no profile for."""
    return f"User {contact_id[-4:]}"
