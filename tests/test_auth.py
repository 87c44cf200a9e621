from __future__ import annotations

import hashlib
import hmac
from urllib.parse import parse_qs, urlparse

from sqlalchemy import select

import receptionist.main as main_module
import receptionist.provisioning as provisioning_module
from receptionist.config import settings
from receptionist.models import OAuthState, ShopSession, VapiConfig
from receptionist.shopify_api import ShopifyApiError
from receptionist.vapi_api import VapiApiError

SHOP = "example.myshopify.com"


def _build_oauth_callback_params(*, shop: str, code: str, state: str) -> dict[str, str]:
    items = [("code", code), ("shop", shop), ("state", state)]
    message = "&".join(f"{key}={value}" for key, value in sorted(items, key=lambda item: item[0]))
    digest = hmac.new(
        settings.SHOPIFY_APP_API_SECRET.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return {"shop": shop, "code": code, "state": state, "hmac": digest}


def _install_fakes(monkeypatch, registered: list[str]) -> None:
    async def fake_exchange_code_for_access_token(*, shop_domain: str, code: str):
        assert shop_domain == SHOP
        assert code == "oauth_code"
        return "shpat_new", "read_products,read_orders"

    async def fake_register_webhook(*, shop_domain: str, access_token: str, topic: str, callback_url: str):
        assert access_token == "shpat_new"
        registered.append(f"{topic} {callback_url}")
        return f"gid://shopify/WebhookSubscription/{len(registered)}"

    monkeypatch.setattr(
        main_module.app.state.shopify_api,
        "exchange_code_for_access_token",
        fake_exchange_code_for_access_token,
    )
    monkeypatch.setattr(main_module.app.state.shopify_api, "register_webhook", fake_register_webhook)


def test_install_redirects_to_shopify_and_stores_state(api_client, db_session):
    response = api_client.get("/auth/install", params={"shop": "Example.myshopify.com"}, follow_redirects=False)

    assert response.status_code == 302
    location = urlparse(response.headers["location"])
    assert location.netloc == SHOP
    assert location.path == "/admin/oauth/authorize"
    query = parse_qs(location.query)
    assert query["client_id"] == ["test_key"]
    assert query["redirect_uri"] == ["https://example.ngrok.app/auth/callback"]
    db_session.expire_all()
    oauth_state = db_session.get(OAuthState, query["state"][0])
    assert oauth_state is not None
    assert oauth_state.shop_domain == SHOP


def test_install_rejects_invalid_shop(api_client, db_session):
    response = api_client.get("/auth/install", params={"shop": "evil.example.com"})

    assert response.status_code == 400


def test_callback_stores_offline_session_and_config(api_client, db_session, monkeypatch):
    db_session.add(OAuthState(state="state_1", shop_domain=SHOP))
    db_session.commit()
    registered: list[str] = []
    _install_fakes(monkeypatch, registered)

    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_1"),
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == f"https://{SHOP}/admin/apps/test_key"
    assert registered == [
        "APP_UNINSTALLED https://example.ngrok.app/webhooks/app/uninstalled",
        "APP_SCOPES_UPDATE https://example.ngrok.app/webhooks/app/scopes_update",
    ]
    db_session.expire_all()
    shop_session = db_session.get(ShopSession, f"offline_{SHOP}")
    assert shop_session.access_token == "shpat_new"
    assert shop_session.scope == "read_products,read_orders"
    assert shop_session.expires is None
    config = db_session.scalars(select(VapiConfig).where(VapiConfig.shop_domain == SHOP)).one()
    assert len(config.vapi_signature) == 64
    assert config.assistant_id is None
    assert db_session.get(OAuthState, "state_1") is None


def test_reinstall_keeps_existing_secret(api_client, db_session, seed_shop, monkeypatch):
    seed_shop(SHOP, secret="e" * 64, access_token="shpat_old")
    db_session.add(OAuthState(state="state_2", shop_domain=SHOP))
    db_session.commit()
    _install_fakes(monkeypatch, [])

    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_2"),
        follow_redirects=False,
    )

    assert response.status_code == 302
    db_session.expire_all()
    config = db_session.scalars(select(VapiConfig).where(VapiConfig.shop_domain == SHOP)).one()
    assert config.vapi_signature == "e" * 64
    assert db_session.get(ShopSession, f"offline_{SHOP}").access_token == "shpat_new"


def test_config_created_by_concurrent_install_is_reused(db_session, monkeypatch):
    db_session.add(VapiConfig(shop_domain=SHOP, vapi_signature="b" * 64))
    db_session.commit()
    original_get_vapi_config = provisioning_module.get_vapi_config
    lookups: list[str] = []

    def get_vapi_config_missing_first(session, shop_domain):
        lookups.append(shop_domain)
        if len(lookups) == 1:
            return None
        return original_get_vapi_config(session, shop_domain)

    monkeypatch.setattr(provisioning_module, "get_vapi_config", get_vapi_config_missing_first)

    config = provisioning_module.ensure_vapi_config(db_session, SHOP)

    assert config.vapi_signature == "b" * 64
    assert lookups == [SHOP, SHOP]
    db_session.expire_all()
    assert len(db_session.scalars(select(VapiConfig).where(VapiConfig.shop_domain == SHOP)).all()) == 1


def test_callback_auto_creates_assistant_and_survives_failure(api_client, db_session, monkeypatch):
    db_session.add(OAuthState(state="state_3", shop_domain=SHOP))
    db_session.commit()
    _install_fakes(monkeypatch, [])
    monkeypatch.setattr(settings, "VAPI_AUTO_CREATE_ASSISTANT", True)

    async def failing_create_assistant(*, payload: dict):
        raise VapiApiError(message="Failed to create assistant: quota exceeded")

    monkeypatch.setattr(main_module.app.state.vapi_api, "create_assistant", failing_create_assistant)

    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_3"),
        follow_redirects=False,
    )

    assert response.status_code == 302
    db_session.expire_all()
    config = db_session.scalars(select(VapiConfig).where(VapiConfig.shop_domain == SHOP)).one()
    assert config.assistant_id is None


def test_callback_rejects_bad_hmac(api_client, db_session):
    params = _build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_1")
    params["hmac"] = "0" * 64

    response = api_client.get("/auth/callback", params=params)

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid OAuth HMAC"


def test_callback_rejects_unknown_state(api_client, db_session):
    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="missing"),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid OAuth state"


def test_callback_surfaces_token_exchange_failure(api_client, db_session, monkeypatch):
    db_session.add(OAuthState(state="state_4", shop_domain=SHOP))
    db_session.commit()

    async def failing_exchange(*, shop_domain: str, code: str):
        raise ShopifyApiError(message="OAuth exchange failed", status_code=502)

    monkeypatch.setattr(main_module.app.state.shopify_api, "exchange_code_for_access_token", failing_exchange)

    response = api_client.get(
        "/auth/callback",
        params=_build_oauth_callback_params(shop=SHOP, code="oauth_code", state="state_4"),
    )

    assert response.status_code == 502
    db_session.expire_all()
    assert db_session.get(ShopSession, f"offline_{SHOP}") is None
