from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from receptionist.models import ShopSession, VapiConfig
from receptionist.security import verify_vapi_signature

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def offline_session_id(shop_domain: str) -> str:
    return f"offline_{shop_domain}"


def is_session_valid(shop_session: ShopSession | None, now: datetime | None = None) -> bool:
    if shop_session is None or not shop_session.access_token:
        return False
    if shop_session.expires is None:
        return True
    current = _as_utc(now) if now else datetime.now(timezone.utc)
    return _as_utc(shop_session.expires) > current


def get_valid_session(
    session: Session,
    shop_domain: str | None,
    *,
    now: datetime | None = None,
) -> ShopSession | None:
    if not shop_domain:
        return None
    current = _as_utc(now) if now else datetime.now(timezone.utc)
    candidates = session.scalars(
        select(ShopSession)
        .where(
            ShopSession.shop_domain == shop_domain,
            ShopSession.access_token != "",
            or_(ShopSession.expires.is_(None), ShopSession.expires > current),
        )
        .order_by(ShopSession.updated_at.desc())
    ).all()
    for candidate in candidates:
        if is_session_valid(candidate, current):
            return candidate
    return None


def resolve_shop_by_signature(session: Session, secret: str | None) -> str | None:
    if not secret:
        return None
    config = session.scalars(select(VapiConfig).where(VapiConfig.vapi_signature == secret)).first()
    if config is None:
        return None
    if not verify_vapi_signature(secret, config.vapi_signature):
        logger.warning("Vendor secret lookup matched a row that failed verification")
        return None
    return config.shop_domain


def store_offline_session(
    session: Session,
    *,
    shop_domain: str,
    access_token: str,
    scope: str,
) -> ShopSession:
    session_id = offline_session_id(shop_domain)
    shop_session = session.get(ShopSession, session_id)
    if shop_session is None:
        shop_session = ShopSession(id=session_id, shop_domain=shop_domain, is_online=False)
        session.add(shop_session)
    shop_session.access_token = access_token
    shop_session.scope = scope
    shop_session.expires = None
    shop_session.updated_at = datetime.now(timezone.utc)
    return shop_session
