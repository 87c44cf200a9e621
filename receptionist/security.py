from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
from collections.abc import Sequence
from urllib.parse import urlencode, urlparse

import jwt
from fastapi import HTTPException, status

from receptionist.config import settings

_SHOP_DOMAIN_RE = re.compile(r"^[a-z0-9][a-z0-9-]*\.myshopify\.com$")


def is_valid_shop_domain(shop: str | None) -> bool:
    if not shop:
        return False
    return bool(_SHOP_DOMAIN_RE.fullmatch(shop.strip().lower()))


def normalize_shop_domain(shop: str) -> str:
    normalized = shop.strip().lower()
    if not _SHOP_DOMAIN_RE.fullmatch(normalized):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="shop must be a valid *.myshopify.com domain",
        )
    return normalized


def verify_vapi_signature(supplied: str | None, expected: str | None) -> bool:
    """Constant-time check of the shared secret sent by the voice vendor.

    Both values are hashed before comparison so a length mismatch costs the
    same as a content mismatch.
    """
    if not supplied or not expected:
        return False
    supplied_bytes = supplied.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    digests_match = hmac.compare_digest(
        hashlib.sha256(supplied_bytes).digest(),
        hashlib.sha256(expected_bytes).digest(),
    )
    return digests_match and len(supplied_bytes) == len(expected_bytes)


def _query_digest(items: Sequence[tuple[str, str]]) -> str:
    message = "&".join(f"{key}={value}" for key, value in sorted(items, key=lambda item: item[0]))
    return hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_oauth_hmac(query_items: Sequence[tuple[str, str]]) -> bool:
    supplied_hmac = None
    filtered: list[tuple[str, str]] = []
    for key, value in query_items:
        if key == "hmac":
            supplied_hmac = value
            continue
        if key == "signature":
            continue
        filtered.append((key, value))

    if not supplied_hmac:
        return False
    return hmac.compare_digest(_query_digest(filtered), supplied_hmac)


def is_fresh_timestamp(value: str | None, *, max_age_seconds: int, now: float | None = None) -> bool:
    try:
        issued_at = int(value or "")
    except ValueError:
        return False
    current = time.time() if now is None else now
    if issued_at > current + settings.SHOPIFY_SESSION_TOKEN_LEEWAY_SECONDS:
        return False
    return current - issued_at <= max_age_seconds


def verify_admin_query(query_items: Sequence[tuple[str, str]], *, now: float | None = None) -> bool:
    """Check a signed admin query string and reject it once its timestamp is stale."""
    timestamp = next((value for key, value in query_items if key == "timestamp"), None)
    if not is_fresh_timestamp(timestamp, max_age_seconds=settings.SHOPIFY_ADMIN_QUERY_MAX_AGE_SECONDS, now=now):
        return False
    return verify_oauth_hmac(query_items)


def sign_admin_query(*, shop_domain: str, host: str | None = None, now: float | None = None) -> str:
    """Build a freshly signed query string for links and form posts inside the admin."""
    items = [("shop", shop_domain), ("timestamp", str(int(time.time() if now is None else now)))]
    if host:
        items.append(("host", host))
    return urlencode([*items, ("hmac", _query_digest(items))])


def verify_webhook_hmac(*, body: bytes, supplied_hmac: str | None) -> bool:
    if not supplied_hmac:
        return False
    digest = hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        body,
        hashlib.sha256,
    ).digest()
    encoded = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(encoded, supplied_hmac)


class SessionTokenError(Exception):
    pass


def decode_session_token(token: str) -> str:
    """Verify an App Bridge session token and return the shop it was issued for."""
    try:
        unverified = jwt.decode(token, options={"verify_signature": False})
    except jwt.InvalidTokenError as exc:
        raise SessionTokenError("Malformed session token") from exc

    dest = unverified.get("dest")
    if not isinstance(dest, str) or not dest:
        raise SessionTokenError("Session token is missing dest")
    shop_domain = urlparse(dest).netloc.lower()
    if not is_valid_shop_domain(shop_domain):
        raise SessionTokenError("Session token dest is not a shop domain")

    try:
        jwt.decode(
            token,
            settings.SHOPIFY_APP_API_SECRET,
            algorithms=["HS256"],
            audience=settings.SHOPIFY_APP_API_KEY,
            issuer=f"https://{shop_domain}/admin",
            leeway=settings.SHOPIFY_SESSION_TOKEN_LEEWAY_SECONDS,
            options={"require": ["exp", "nbf", "iss", "aud", "dest"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise SessionTokenError("Session token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise SessionTokenError("Session token verification failed") from exc
    return shop_domain
