"""
Signing and hashing helpers shared by API keys, access codes and webhooks
"""
import hashlib
import hmac
import secrets
from typing import Optional, Union

SIGNATURE_HEADER = "X-FirstUser-Signature-Sha256"
LEGACY_SIGNATURE_HEADER = "X-FirstUser-Signature"
EVENT_HEADER = "X-FirstUser-Event"
DELIVERY_HEADER = "X-FirstUser-Delivery"

BytesLike = Union[str, bytes]


def _to_bytes(value: BytesLike) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def hash_secret(value: str) -> str:
    """One-way sha256 hex digest; raw secrets are never stored."""
    return hashlib.sha256(_to_bytes(value)).hexdigest()


def generate_token(prefix: str = "", nbytes: int = 32) -> str:
    # token_urlsafe only emits [A-Za-z0-9_-], so "keyId.secret" stays splittable
    token = secrets.token_urlsafe(nbytes)
    return f"{prefix}_{token}" if prefix else token


def generate_id(prefix: str, nbytes: int = 12) -> str:
    return f"{prefix}_{secrets.token_hex(nbytes)}"


def constant_time_equals(a: Optional[BytesLike], b: Optional[BytesLike]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(_to_bytes(a), _to_bytes(b))


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(_to_bytes(secret), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    expected = sign_payload(secret, body)
    return constant_time_equals(expected, signature.strip().lower())
