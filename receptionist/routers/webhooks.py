from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from receptionist.db import get_session
from receptionist.enums import GdprRequestStatusEnum, GdprRequestTypeEnum
from receptionist.gdpr import (
    collect_customer_data,
    log_gdpr_request,
    mark_request_failed,
    record_failed_request,
    redact_customer_data,
    redact_shop_data,
    update_gdpr_request_status,
)
from receptionist.models import GdprRequest, ShopSession
from receptionist.schemas import (
    CustomersDataRequestPayload,
    CustomersRedactPayload,
    ScopesUpdatePayload,
    ShopRedactPayload,
    WebhookOutcome,
)
from receptionist.security import is_valid_shop_domain, verify_webhook_hmac

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _read_verified_webhook(request: Request) -> tuple[str | None, dict[str, Any]]:
    body = await request.body()
    if not verify_webhook_hmac(body=body, supplied_hmac=request.headers.get("x-shopify-hmac-sha256")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook HMAC")

    try:
        payload = json.loads(body.decode("utf-8")) if body else {}
    except (UnicodeDecodeError, ValueError):
        payload = {}
    if not isinstance(payload, dict):
        payload = {}

    shop = request.headers.get("x-shopify-shop-domain") or payload.get("shop_domain")
    shop_domain = shop.strip().lower() if isinstance(shop, str) and is_valid_shop_domain(shop) else None
    return shop_domain, payload


def _failed_outcome(topic: str, shop_domain: str | None, detail: str) -> WebhookOutcome:
    return WebhookOutcome(ok=False, topic=topic, shopDomain=shop_domain, detail=detail)


@router.post("/app/uninstalled", response_model=WebhookOutcome)
async def app_uninstalled_webhook(request: Request, session: Session = Depends(get_session)):
    topic = "app/uninstalled"
    shop_domain, _ = await _read_verified_webhook(request)
    if not shop_domain:
        return _failed_outcome(topic, None, "Missing shop domain")

    has_session = session.scalars(select(ShopSession.id).where(ShopSession.shop_domain == shop_domain)).first()
    if has_session is None:
        return WebhookOutcome(ok=True, topic=topic, shopDomain=shop_domain, detail="Already processed")

    gdpr_request: GdprRequest | None = None
    try:
        gdpr_request = log_gdpr_request(
            session,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.app_uninstalled,
            payload={"topic": topic},
        )
    except Exception:
        session.rollback()
        logger.exception("Could not log uninstall request", extra={"shop_domain": shop_domain})

    try:
        deleted = redact_shop_data(session, shop_domain=shop_domain, include_audit_trail=False)
        if gdpr_request is not None:
            update_gdpr_request_status(session, gdpr_request, GdprRequestStatusEnum.completed)
    except Exception as exc:
        logger.exception("Uninstall cleanup failed", extra={"shop_domain": shop_domain})
        mark_request_failed(
            session,
            gdpr_request,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.app_uninstalled,
            error=str(exc),
            payload={"topic": topic},
        )
        return _failed_outcome(topic, shop_domain, "Uninstall cleanup failed")

    logger.info("Shop data removed after uninstall", extra={"shop_domain": shop_domain, "deleted": deleted})
    return WebhookOutcome(ok=True, topic=topic, shopDomain=shop_domain, deleted=deleted)


@router.post("/app/scopes_update", response_model=WebhookOutcome)
async def app_scopes_update_webhook(request: Request, session: Session = Depends(get_session)):
    topic = "app/scopes_update"
    shop_domain, payload = await _read_verified_webhook(request)
    if not shop_domain:
        return _failed_outcome(topic, None, "Missing shop domain")

    try:
        scopes = ScopesUpdatePayload.model_validate(payload)
    except ValidationError:
        logger.warning("Malformed scopes update payload", extra={"shop_domain": shop_domain})
        return _failed_outcome(topic, shop_domain, "Malformed payload")

    scope_csv = ",".join(scope.strip() for scope in scopes.current if scope.strip())
    try:
        shop_sessions = session.scalars(select(ShopSession).where(ShopSession.shop_domain == shop_domain)).all()
        for shop_session in shop_sessions:
            shop_session.scope = scope_csv
        session.commit()
    except Exception as exc:
        logger.exception("Scopes update failed", extra={"shop_domain": shop_domain})
        mark_request_failed(
            session,
            None,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.scopes_update,
            error=str(exc),
            payload=payload,
        )
        return _failed_outcome(topic, shop_domain, "Scopes update failed")

    logger.info("Scopes updated", extra={"shop_domain": shop_domain, "sessions": len(shop_sessions)})
    return WebhookOutcome(ok=True, topic=topic, shopDomain=shop_domain, detail=scope_csv)


@router.post("/customers/data_request", response_model=WebhookOutcome)
async def customers_data_request_webhook(request: Request, session: Session = Depends(get_session)):
    topic = "customers/data_request"
    shop_domain, payload = await _read_verified_webhook(request)
    try:
        data_request = CustomersDataRequestPayload.model_validate(payload)
    except ValidationError:
        logger.warning("Malformed data request payload", extra={"shop_domain": shop_domain})
        return _failed_outcome(topic, shop_domain, "Malformed payload")
    shop_domain = shop_domain or data_request.shop_domain
    customer = data_request.customer

    gdpr_request: GdprRequest | None = None
    try:
        gdpr_request = log_gdpr_request(
            session,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.data_request,
            customer_id=customer.id,
            customer_email=customer.email,
            customer_phone=customer.phone,
            orders_requested=data_request.orders_requested,
            payload=payload,
        )
        export = collect_customer_data(
            session,
            shop_domain=shop_domain,
            customer_id=customer.id,
            customer_email=customer.email,
            customer_phone=customer.phone,
        )
        update_gdpr_request_status(
            session,
            gdpr_request,
            GdprRequestStatusEnum.completed,
            export_payload=export,
        )
    except Exception as exc:
        logger.exception("Customer data collection failed", extra={"shop_domain": shop_domain})
        mark_request_failed(
            session,
            gdpr_request,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.data_request,
            error=str(exc),
            payload=payload,
        )
        return _failed_outcome(topic, shop_domain, "Customer data collection failed")

    return WebhookOutcome(
        ok=True,
        topic=topic,
        shopDomain=shop_domain,
        detail=f"request {gdpr_request.id}",
    )


@router.post("/customers/redact", response_model=WebhookOutcome)
async def customers_redact_webhook(request: Request, session: Session = Depends(get_session)):
    topic = "customers/redact"
    shop_domain, payload = await _read_verified_webhook(request)
    try:
        redact_request = CustomersRedactPayload.model_validate(payload)
    except ValidationError:
        logger.warning("Malformed customer redact payload", extra={"shop_domain": shop_domain})
        return _failed_outcome(topic, shop_domain, "Malformed payload")
    shop_domain = shop_domain or redact_request.shop_domain
    customer = redact_request.customer

    gdpr_request: GdprRequest | None = None
    try:
        gdpr_request = log_gdpr_request(
            session,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.customer_redact,
            customer_id=customer.id,
            customer_email=customer.email,
            customer_phone=customer.phone,
            orders_requested=redact_request.orders_to_redact,
            payload=payload,
        )
        deleted_call_logs = redact_customer_data(
            session,
            shop_domain=shop_domain,
            customer_email=customer.email,
            customer_phone=customer.phone,
        )
        session.commit()
        update_gdpr_request_status(session, gdpr_request, GdprRequestStatusEnum.completed)
    except Exception as exc:
        logger.exception("Customer redaction failed", extra={"shop_domain": shop_domain})
        mark_request_failed(
            session,
            gdpr_request,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.customer_redact,
            error=str(exc),
            payload=payload,
        )
        return _failed_outcome(topic, shop_domain, "Customer redaction failed")

    return WebhookOutcome(
        ok=True,
        topic=topic,
        shopDomain=shop_domain,
        deleted={"callLogs": deleted_call_logs},
    )


@router.post("/shop/redact", response_model=WebhookOutcome)
async def shop_redact_webhook(request: Request, session: Session = Depends(get_session)):
    topic = "shop/redact"
    shop_domain, payload = await _read_verified_webhook(request)
    try:
        redact_request = ShopRedactPayload.model_validate(payload)
    except ValidationError:
        logger.warning("Malformed shop redact payload", extra={"shop_domain": shop_domain})
        return _failed_outcome(topic, shop_domain, "Malformed payload")
    shop_domain = shop_domain or redact_request.shop_domain

    try:
        deleted = redact_shop_data(session, shop_domain=shop_domain, include_audit_trail=True)
    except Exception as exc:
        logger.exception("Shop redaction failed", extra={"shop_domain": shop_domain})
        record_failed_request(
            session,
            shop_domain=shop_domain,
            request_type=GdprRequestTypeEnum.shop_redact,
            error=str(exc),
            payload=payload,
        )
        return _failed_outcome(topic, shop_domain, "Shop redaction failed")

    logger.info("Shop data redacted", extra={"shop_domain": shop_domain, "deleted": deleted})
    return WebhookOutcome(ok=True, topic=topic, shopDomain=shop_domain, deleted=deleted)
