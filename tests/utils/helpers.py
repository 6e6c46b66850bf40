"""Test helper functions."""

import json
import hmac
import hashlib
from typing import Any, Dict, Optional


def generate_chapa_signature(secret: str, body: str) -> str:
    """Generate a valid Chapa webhook signature for testing."""
    return hmac.new(
        secret.encode('utf-8'),
        body.encode('utf-8'),
        hashlib.sha256
    ).hexdigest()


def create_chapa_webhook(
    tx_ref: str,
    event: str = "charge.success",
    status: str = "success",
    amount: str = "240.00",
) -> Dict[str, Any]:
    """Create a Chapa webhook payload for testing."""
    return {
        "event": event,
        "tx_ref": tx_ref,
        "status": status,
        "amount": amount,
        "currency": "ETB",
        "reference": f"AP{tx_ref[-6:]}",
    }


def signed_webhook(payload: Dict[str, Any], secret: str) -> tuple[str, str]:
    """Serialize a payload and sign it; returns (body, signature)."""
    body = json.dumps(payload)
    return body, generate_chapa_signature(secret, body)


def chapa_verify_response(tx_ref: str, status: str = "success", amount: float = 240.0) -> Dict[str, Any]:
    """Body of GET /transaction/verify/{tx_ref}."""
    return {
        "message": "Payment details",
        "status": "success",
        "data": {
            "tx_ref": tx_ref,
            "status": status,
            "amount": amount,
            "currency": "ETB",
        },
    }


def create_vercel_request(query: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Create a Vercel cron request for testing."""
    return {
        "method": "GET",
        "path": "/api/payments/reconcile",
        "headers": {},
        "body": "",
        "query": query or {},
    }
