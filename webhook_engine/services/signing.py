"""HMAC-SHA256 signing of outgoing webhook bodies."""

import hashlib
import hmac
import secrets

SIGNATURE_PREFIX = "sha256="


def generate_secret() -> str:
    """Generate a signing secret for a new webhook."""
    return secrets.token_urlsafe(32)


def sign_payload(secret: str, body: bytes) -> str:
    """Return the X-Webhook-Signature value for the exact body bytes."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify_signature(secret: str, body: bytes, header: str | None) -> bool:
    """Check a received X-Webhook-Signature header (constant-time)."""
    if not header or not header.startswith(SIGNATURE_PREFIX):
        return False
    expected = sign_payload(secret, body)
    return hmac.compare_digest(expected, header)
