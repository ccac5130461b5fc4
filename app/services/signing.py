"""HMAC-SHA256 signing for webhook payloads."""

import hashlib
import hmac
import json
import secrets

SIGNATURE_PREFIX = "sha256="
SIGNATURE_ALGORITHM = "sha256"


def serialize_payload(payload: dict) -> bytes:
    """Compact JSON, byte-for-byte what goes on the wire and what gets signed."""
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, allow_nan=False).encode("utf-8")


def sign(payload: bytes, secret: str) -> str:
    """Generate the X-VASA-Signature value for raw payload bytes."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(payload: bytes, signature: str, secret: str) -> bool:
    """Constant-time check of a received signature against the payload bytes."""
    if not signature:
        return False
    expected = sign(payload, secret)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def generate_secret() -> str:
    return secrets.token_hex(32)


def mask_secret(secret: str | None) -> str | None:
    if not secret:
        return None
    return f"{secret[:8]}..."
