from __future__ import annotations

import logging
from urllib.parse import urlencode
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from receptionist.config import settings
from receptionist.db import get_session
from receptionist.dependencies import get_shopify_api, get_vapi_api
from receptionist.models import OAuthState
from receptionist.provisioning import ensure_vapi_config, provision_assistant
from receptionist.resolvers import store_offline_session
from receptionist.security import normalize_shop_domain, verify_oauth_hmac
from receptionist.shopify_api import ShopifyApiClient, ShopifyApiError
from receptionist.vapi_api import VapiApiClient, VapiApiError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REQUIRED_WEBHOOKS: tuple[tuple[str, str], ...] = (
    ("APP_UNINSTALLED", "/webhooks/app/uninstalled"),
    ("APP_SCOPES_UPDATE", "/webhooks/app/scopes_update"),
)


def build_shopify_oauth_url(*, shop_domain: str, state: str) -> str:
    query = urlencode(
        {
            "client_id": settings.SHOPIFY_APP_API_KEY,
            "scope": settings.admin_scopes_csv,
            "redirect_uri": f"{settings.app_base_url}/auth/callback",
            "state": state,
        }
    )
    return f"https://{shop_domain}/admin/oauth/authorize?{query}"


def embedded_app_url(shop_domain: str) -> str:
    return f"https://{shop_domain}/admin/apps/{settings.SHOPIFY_APP_API_KEY}"


async def _register_required_webhooks(
    shopify_api: ShopifyApiClient,
    *,
    shop_domain: str,
    access_token: str,
) -> None:
    for topic, path in REQUIRED_WEBHOOKS:
        await shopify_api.register_webhook(
            shop_domain=shop_domain,
            access_token=access_token,
            topic=topic,
            callback_url=f"{settings.app_base_url}{path}",
        )


@router.get("/install")
def auth_install(shop: str, session: Session = Depends(get_session)):
    shop_domain = normalize_shop_domain(shop)
    state = uuid4().hex
    session.add(OAuthState(state=state, shop_domain=shop_domain))
    session.commit()
    return RedirectResponse(url=build_shopify_oauth_url(shop_domain=shop_domain, state=state), status_code=302)


@router.get("/callback")
async def auth_callback(
    request: Request,
    session: Session = Depends(get_session),
    shopify_api: ShopifyApiClient = Depends(get_shopify_api),
    vapi_api: VapiApiClient = Depends(get_vapi_api),
):
    query_items = list(request.query_params.multi_items())
    if not verify_oauth_hmac(query_items):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth HMAC")

    shop = request.query_params.get("shop")
    code = request.query_params.get("code")
    state_value = request.query_params.get("state")
    if not shop or not code or not state_value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth callback params: shop, code, state",
        )

    shop_domain = normalize_shop_domain(shop)
    oauth_state = session.get(OAuthState, state_value)
    if not oauth_state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid OAuth state")
    if oauth_state.shop_domain != shop_domain:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="OAuth state does not match the shop domain",
        )

    try:
        access_token, scopes_csv = await shopify_api.exchange_code_for_access_token(
            shop_domain=shop_domain,
            code=code,
        )
        store_offline_session(session, shop_domain=shop_domain, access_token=access_token, scope=scopes_csv)
        session.delete(oauth_state)
        session.commit()

        await _register_required_webhooks(shopify_api, shop_domain=shop_domain, access_token=access_token)
    except ShopifyApiError as exc:
        session.rollback()
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc

    ensure_vapi_config(session, shop_domain)
    logger.info("Shop installed", extra={"shop_domain": shop_domain})

    if settings.VAPI_AUTO_CREATE_ASSISTANT:
        try:
            await provision_assistant(session, vapi_api, shop_domain=shop_domain)
        except VapiApiError:
            session.rollback()
            logger.exception("Automatic assistant creation failed", extra={"shop_domain": shop_domain})

    return RedirectResponse(url=embedded_app_url(shop_domain), status_code=302)
