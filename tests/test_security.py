from __future__ import annotations

import base64
import hashlib
import hmac
import time
from urllib.parse import parse_qsl

import jwt
import pytest
from fastapi import HTTPException

from receptionist.security import (
    SessionTokenError,
    decode_session_token,
    is_fresh_timestamp,
    is_valid_shop_domain,
    normalize_shop_domain,
    sign_admin_query,
    verify_admin_query,
    verify_oauth_hmac,
    verify_vapi_signature,
    verify_webhook_hmac,
)


def _oauth_hmac(query_items: list[tuple[str, str]], secret: str) -> str:
    pairs = [item for item in query_items if item[0] not in {"hmac", "signature"}]
    pairs.sort(key=lambda item: item[0])
    message = "&".join(f"{key}={value}" for key, value in pairs)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def _session_token(**overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": "https://example.myshopify.com/admin",
        "dest": "https://example.myshopify.com",
        "aud": "test_key",
        "sub": "42",
        "exp": now + 60,
        "nbf": now - 5,
        "iat": now - 5,
        "jti": "token-1",
        "sid": "session-1",
    }
    secret = overrides.pop("secret", "test_secret")
    claims.update(overrides)
    return jwt.encode(claims, secret, algorithm="HS256")


def test_vapi_signature_accepts_identical_secret():
    secret = "f" * 64
    assert verify_vapi_signature(secret, "".join(["f"] * 64))


def test_vapi_signature_rejects_distinct_secret_of_equal_length():
    assert not verify_vapi_signature("a" * 64, "a" * 63 + "b")


def test_vapi_signature_rejects_prefix_and_missing_values():
    assert not verify_vapi_signature("abc", "abcdef")
    assert not verify_vapi_signature(None, "abc")
    assert not verify_vapi_signature("abc", None)
    assert not verify_vapi_signature("", "")


def test_normalize_shop_domain_accepts_valid_domain():
    assert normalize_shop_domain(" Example-Shop.myshopify.com ") == "example-shop.myshopify.com"


def test_normalize_shop_domain_rejects_foreign_host():
    with pytest.raises(HTTPException) as exc_info:
        normalize_shop_domain("evil.example.com")
    assert exc_info.value.status_code == 400
    assert not is_valid_shop_domain("evil.example.com")
    assert not is_valid_shop_domain(None)


def test_verify_oauth_hmac_accepts_valid_signature():
    query_items = [
        ("code", "abc"),
        ("shop", "example-shop.myshopify.com"),
        ("state", "state-123"),
        ("timestamp", "1710000000"),
    ]
    digest = _oauth_hmac(query_items, "test_secret")
    query_items.append(("hmac", digest))

    assert verify_oauth_hmac(query_items)


def test_verify_oauth_hmac_rejects_tampered_params():
    query_items = [("shop", "example-shop.myshopify.com"), ("timestamp", "1710000000")]
    digest = _oauth_hmac(query_items, "test_secret")
    tampered = [("shop", "other-shop.myshopify.com"), ("timestamp", "1710000000"), ("hmac", digest)]

    assert not verify_oauth_hmac(tampered)
    assert not verify_oauth_hmac(query_items)


def test_admin_query_expires():
    query_items = [("shop", "example-shop.myshopify.com"), ("timestamp", "1710000000")]
    query_items.append(("hmac", _oauth_hmac(query_items, "test_secret")))

    assert verify_admin_query(query_items, now=1710000000 + 60)
    assert not verify_admin_query(query_items, now=1710000000 + 3600)
    assert not verify_admin_query(query_items, now=1710000000 - 3600)


def test_admin_query_requires_timestamp():
    query_items = [("shop", "example-shop.myshopify.com")]
    query_items.append(("hmac", _oauth_hmac(query_items, "test_secret")))

    assert verify_oauth_hmac(query_items)
    assert not verify_admin_query(query_items)


def test_signed_admin_query_verifies_until_stale():
    signed = sign_admin_query(shop_domain="example-shop.myshopify.com", host="aG9zdA", now=1710000000)
    query_items = parse_qsl(signed)

    assert dict(query_items)["timestamp"] == "1710000000"
    assert dict(query_items)["host"] == "aG9zdA"
    assert verify_admin_query(query_items, now=1710000100)
    assert not verify_admin_query(query_items, now=1710000000 + 7200)
    assert not is_fresh_timestamp("not-a-number", max_age_seconds=60)


def test_verify_webhook_hmac_uses_base64_digest():
    body = b'{"shop_domain":"example.myshopify.com"}'
    digest = base64.b64encode(hmac.new(b"test_secret", body, hashlib.sha256).digest()).decode("utf-8")

    assert verify_webhook_hmac(body=body, supplied_hmac=digest)
    assert not verify_webhook_hmac(body=body + b" ", supplied_hmac=digest)
    assert not verify_webhook_hmac(body=body, supplied_hmac=None)


def test_decode_session_token_returns_shop():
    assert decode_session_token(_session_token()) == "example.myshopify.com"


def test_decode_session_token_rejects_wrong_audience():
    with pytest.raises(SessionTokenError):
        decode_session_token(_session_token(aud="another_app"))


def test_decode_session_token_rejects_wrong_secret():
    with pytest.raises(SessionTokenError, match="verification failed"):
        decode_session_token(_session_token(secret="not_the_secret"))


def test_decode_session_token_rejects_expired_token():
    now = int(time.time())
    with pytest.raises(SessionTokenError, match="expired"):
        decode_session_token(_session_token(exp=now - 120, nbf=now - 300, iat=now - 300))


def test_decode_session_token_rejects_issuer_for_other_shop():
    with pytest.raises(SessionTokenError):
        decode_session_token(_session_token(iss="https://other.myshopify.com/admin"))


def test_decode_session_token_rejects_non_shop_dest():
    with pytest.raises(SessionTokenError, match="dest"):
        decode_session_token(_session_token(dest="https://evil.example.com"))
