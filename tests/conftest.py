import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SHOPIFY_APP_API_KEY", "test_key")
os.environ.setdefault("SHOPIFY_APP_API_SECRET", "test_secret")
os.environ.setdefault("SHOPIFY_APP_SCOPES", "read_products,write_products,read_orders")
os.environ.setdefault("SHOPIFY_APP_BASE_URL", "https://example.ngrok.app")
os.environ.setdefault("VAPI_PRIVATE_KEY", "vapi_private_key")
os.environ.setdefault("VAPI_AUTO_CREATE_ASSISTANT", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_receptionist.db")
os.environ.setdefault("DB_CONNECT_RETRY_BACKOFF_SECONDS", "0")
os.environ.setdefault("API_RATE_LIMIT", "1000 per minute")

import receptionist.main as main_module  # noqa: E402
from receptionist.models import CallLog, GdprRequest, OAuthState, ShopSession, VapiConfig  # noqa: E402
from receptionist.rate_limit import limiter  # noqa: E402

_TABLES = (CallLog, GdprRequest, OAuthState, ShopSession, VapiConfig)


def _wipe(session) -> None:
    for model in _TABLES:
        session.execute(delete(model))
    session.commit()


@pytest.fixture()
def db_session():
    database = main_module.app.state.database
    database.init_db()
    session = database.open_session()
    _wipe(session)
    try:
        yield session
    finally:
        session.rollback()
        _wipe(session)
        session.close()


@pytest.fixture()
def api_client(db_session):
    limiter.reset()
    with TestClient(main_module.app) as client:
        yield client


@pytest.fixture()
def seed_shop(db_session):
    def _seed(
        shop_domain: str = "example.myshopify.com",
        *,
        secret: str = "a" * 64,
        access_token: str | None = "shpat_token",
        expires=None,
        assistant_id: str | None = None,
        phone_number_id: str | None = None,
    ) -> VapiConfig:
        config = VapiConfig(
            shop_domain=shop_domain,
            vapi_signature=secret,
            assistant_id=assistant_id,
            phone_number_id=phone_number_id,
        )
        db_session.add(config)
        if access_token is not None:
            db_session.add(
                ShopSession(
                    id=f"offline_{shop_domain}",
                    shop_domain=shop_domain,
                    access_token=access_token,
                    scope="read_products",
                    expires=expires,
                )
            )
        db_session.commit()
        return config

    return _seed
