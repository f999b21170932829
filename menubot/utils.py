"""
Utility functions for the conversation router.
"""

import hmac
import hashlib
import logging
from typing import Optional

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def verify_hub_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Verify a Meta X-Hub-Signature-256 header.

    Args:
        body: Raw request body bytes
        signature: Header value, "sha256=<hex HMAC-SHA256 of body>"
        secret: WHATSAPP_APP_SECRET

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not signature.startswith(SIGNATURE_PREFIX):
        logger.warning("Missing or malformed X-Hub-Signature-256 header")
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        body,
        hashlib.sha256
    ).hexdigest()

    # Header values arrive latin-1 decoded; compare bytes so non-ASCII input
    # is just a mismatch
    received = signature[len(SIGNATURE_PREFIX):].encode("utf-8", "surrogateescape")
    is_valid = hmac.compare_digest(expected_signature.encode("ascii"), received)
    logger.debug(f"Webhook signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
