"""
Outbound webhook signing - HMAC-SHA256 over the exact request body.

Receivers verify by recomputing HMAC-SHA256(secret, raw_body) and comparing
it with the X-Webhook-Signature header (hex). Rotating an endpoint secret
invalidates every signature computed with the previous secret.
"""
import hashlib
import hmac
import json
import logging
import secrets
from typing import Any

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"

SECRET_PREFIX = "whsec_"


def generate_webhook_secret() -> str:
    """Generate a new endpoint secret (whsec_ + 64 hex chars)."""
    return SECRET_PREFIX + secrets.token_hex(32)


def serialize_payload(payload: dict[str, Any]) -> str:
    """
    Canonical JSON body for a stored payload snapshot.
    Sorted keys + compact separators so a JSONB round-trip re-serializes identically.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sign_payload(body: str | bytes, secret: str) -> str:
    """
    Compute the hex HMAC-SHA256 signature of a request body.
    Raises ValueError on an empty secret.
    """
    if not secret:
        raise ValueError("Webhook secret must not be empty")
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(
    secret: str,
    signature: str,
    body: str | bytes,
    header_prefix: str = "sha256=",
) -> bool:
    """
    Validate an HMAC-SHA256 signature (constant-time).
    Handles signatures with optional prefix (e.g., "sha256=...").
    """
    if not secret or not signature:
        return False

    sig = signature
    if sig.startswith(header_prefix):
        sig = sig[len(header_prefix):]

    try:
        expected = sign_payload(body, secret)
        return hmac.compare_digest(expected, sig.lower())
    except Exception as e:
        logger.error("HMAC-SHA256 validation error: %s", str(e))
        return False