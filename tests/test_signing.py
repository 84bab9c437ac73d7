"""Unit tests for signing helpers and URL policy utilities."""

import hashlib
import hmac

from app.core.signing import (
    constant_time_equals,
    generate_id,
    generate_token,
    hash_secret,
    sign_payload,
    verify_signature,
)
from app.services.api_key_service import APIKeyService
from app.utils.urls import append_query_params, normalize_origin


def test_sign_payload_is_hex_hmac_sha256():
    body = b'{"id":"evt_1","type":"integration.test"}'
    expected = hmac.new(b"whsec_abc", body, hashlib.sha256).hexdigest()
    assert sign_payload("whsec_abc", body) == expected


def test_verify_signature_rejects_tampered_body():
    body = b'{"a":1}'
    signature = sign_payload("secret", body)
    assert verify_signature("secret", body, signature)
    assert verify_signature("secret", body, f"  {signature.upper()} ")
    assert not verify_signature("secret", b'{"a":2}', signature)
    assert not verify_signature("other", body, signature)
    assert not verify_signature("secret", body, None)


def test_hash_secret_is_stable_sha256():
    assert hash_secret("fuac_code") == hashlib.sha256(b"fuac_code").hexdigest()
    assert len(hash_secret("x")) == 64


def test_generated_tokens_are_prefixed_and_unique():
    first = generate_token("fuac")
    second = generate_token("fuac")
    assert first.startswith("fuac_")
    assert first != second
    assert generate_id("evt").startswith("evt_")


def test_constant_time_equals_handles_none():
    assert constant_time_equals("a", "a")
    assert not constant_time_equals("a", None)
    assert not constant_time_equals(None, None)


def test_credential_round_trip_through_bearer_header():
    key_id, secret, plain = APIKeyService.generate_credential()
    assert plain == f"{key_id}.{secret}"
    assert APIKeyService.parse_credential(f"Bearer {plain}") == (key_id, secret)
    assert APIKeyService.parse_credential(f"bearer {plain}") == (key_id, secret)
    assert APIKeyService.parse_credential("Bearer no-separator") is None
    assert APIKeyService.parse_credential(None) is None


def test_credential_requires_bearer_scheme():
    _, _, plain = APIKeyService.generate_credential()
    assert APIKeyService.parse_credential(plain) is None
    assert APIKeyService.parse_credential(f"Basic {plain}") is None
    assert APIKeyService.parse_credential(f"Token {plain}") is None


def test_normalize_origin():
    assert normalize_origin("https://App.Example.com/path?q=1") == "https://app.example.com"
    assert normalize_origin("https://example.com:443/x") == "https://example.com"
    assert normalize_origin("http://localhost:3000/cb") == "http://localhost:3000"
    assert normalize_origin("javascript:alert(1)") is None
    assert normalize_origin("acmenotes://firstuser") is None


def test_append_query_params_replaces_existing_keys():
    url = append_query_params("https://p.example.com/cb?x=1&fu_access_code=old", {"fu_access_code": "new"})
    assert url == "https://p.example.com/cb?x=1&fu_access_code=new"
