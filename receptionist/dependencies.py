from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from receptionist.db import get_session
from receptionist.errors import ReauthorizationRequired
from receptionist.models import ShopSession
from receptionist.resolvers import get_valid_session
from receptionist.security import (
    SessionTokenError,
    decode_session_token,
    normalize_shop_domain,
    sign_admin_query,
    verify_admin_query,
)
from receptionist.shopify_api import ShopifyApiClient
from receptionist.vapi_api import VapiApiClient

logger = logging.getLogger(__name__)


def get_shopify_api(request: Request) -> ShopifyApiClient:
    return request.app.state.shopify_api


def get_vapi_api(request: Request) -> VapiApiClient:
    return request.app.state.vapi_api


@dataclass(frozen=True)
class AdminContext:
    shop_domain: str
    shop_session: ShopSession
    host: str | None
    signed_query: str


def _bearer_token(request: Request) -> str | None:
    authorization = request.headers.get("authorization") or ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    id_token = request.query_params.get("id_token")
    return id_token or None


def authenticate_admin_request(request: Request) -> str:
    """Return the shop an embedded admin request was issued for.

    Accepts an App Bridge session token first and falls back to the signed
    query string Shopify appends when it loads the app, or the one the
    dashboard signs into its own links and forms.
    """
    token_error: SessionTokenError | None = None
    token = _bearer_token(request)
    if token:
        try:
            return decode_session_token(token)
        except SessionTokenError as exc:
            token_error = exc

    shop = request.query_params.get("shop")
    if shop and verify_admin_query(list(request.query_params.multi_items())):
        return normalize_shop_domain(shop)

    if token_error is not None:
        logger.info("Rejected session token", extra={"reason": str(token_error)})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session token"
        ) from token_error
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing admin authentication")


def require_admin_context(request: Request, session: Session = Depends(get_session)) -> AdminContext:
    shop_domain = authenticate_admin_request(request)
    shop_session = get_valid_session(session, shop_domain)
    if shop_session is None:
        raise ReauthorizationRequired(shop_domain)
    host = request.query_params.get("host")
    return AdminContext(
        shop_domain=shop_domain,
        shop_session=shop_session,
        host=host,
        signed_query=sign_admin_query(shop_domain=shop_domain, host=host),
    )
