"""
GitHub webhook signature validation utilities
"""

import binascii
import hashlib
import hmac
from typing import Mapping, Optional

import structlog

from mailbot.utils.exceptions import AuthError

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
SIGNATURE_PREFIX = "sha256="


def compute_signature(payload: bytes, secret: bytes) -> bytes:
    """HMAC-SHA256 digest of the exact request body"""
    return hmac.new(secret, payload, hashlib.sha256).digest()


def validate_github_webhook(payload: bytes, signature: Optional[str], secret: bytes) -> None:
    """
    Validate GitHub webhook signature

    Args:
        payload: Raw request body as bytes
        signature: X-Hub-Signature-256 header value
        secret: Webhook secret configured in GitHub

    Raises:
        AuthError: if the header is missing, not hex, or does not match
    """
    if not signature:
        raise AuthError("invalid signature: missing signature header")
    if not signature.startswith(SIGNATURE_PREFIX):
        raise AuthError("invalid signature: expected sha256=<hex>")

    try:
        expected_hash = bytes.fromhex(signature[len(SIGNATURE_PREFIX):])
    except ValueError as e:
        raise AuthError(f"invalid signature: {e}") from None
    if not expected_hash:
        raise AuthError("invalid signature: empty digest")

    actual_hash = compute_signature(payload, secret)

    # Use constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(actual_hash, expected_hash):
        logger.warning(
            "Invalid webhook signature",
            received_prefix=binascii.hexlify(expected_hash[:4]).decode(),
        )
        raise AuthError("signature verification failed")


def extract_github_event_type(headers: Mapping[str, str]) -> str:
    """
    Extract GitHub event type from webhook headers

    Args:
        headers: Request headers mapping

    Returns:
        str: Event type (e.g., 'push', 'ping'), empty if absent
    """
    return headers.get(EVENT_HEADER, "")
