"""Chapa webhook signature verification."""

import os
import hmac
import hashlib
from typing import Optional
from src.utils.errors import WebhookVerificationError
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)

SIGNATURE_HEADERS = ("x-chapa-signature", "chapa-signature")


def should_bypass_verification() -> bool:
    """Check if signature verification should be bypassed (dev mode)."""
    env = os.environ.get("ENVIRONMENT", "").lower()
    if env in ("development", "local"):
        return True

    bypass_flag = os.environ.get("CHAPA_BYPASS_VERIFY", "").lower()
    return bypass_flag == "true"


def get_webhook_secret() -> str:
    """Get the Chapa webhook secret from environment."""
    secret = os.environ.get("CHAPA_WEBHOOK_SECRET", "").strip()
    if not secret:
        raise WebhookVerificationError("CHAPA_WEBHOOK_SECRET not set")
    return secret


def compute_chapa_signature(secret: str, body: str) -> str:
    """HMAC-SHA256 hex digest of the raw request body."""
    return hmac.new(
        secret.encode("utf-8"),
        body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_chapa_signature(secret: str, body: str, signature: Optional[str]) -> bool:
    """Constant-time comparison of a webhook signature against the body."""
    if not secret or not signature:
        return False
    expected = compute_chapa_signature(secret, body)
    return hmac.compare_digest(expected, signature.strip().lower())


def signature_from_headers(headers) -> Optional[str]:
    """Pick the webhook signature out of request headers (case-insensitive)."""
    lowered = {str(k).lower(): v for k, v in dict(headers or {}).items()}
    for name in SIGNATURE_HEADERS:
        if lowered.get(name):
            return lowered[name]
    return None


def verify_chapa_request(raw_body: str, signature: Optional[str]) -> bool:
    """
    Verify a Chapa webhook request.

    Returns True if verification passes or is bypassed, False otherwise.
    """
    if should_bypass_verification():
        logger.debug("Chapa signature verification bypassed (dev mode)")
        return True

    try:
        secret = get_webhook_secret()
    except WebhookVerificationError as e:
        logger.error("Chapa verification error", error=e.message)
        return False

    result = verify_chapa_signature(secret, raw_body, signature)
    if not result:
        logger.warning(
            "Chapa signature mismatch",
            has_signature=bool(signature),
            body_length=len(raw_body),
        )
    return result
