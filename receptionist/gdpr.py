"""Customer and shop data handling for the mandatory privacy webhooks."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import ColumnElement, delete, false, or_, select
from sqlalchemy.orm import Session

from receptionist.enums import GdprRequestStatusEnum, GdprRequestTypeEnum
from receptionist.models import Base, CallLog, GdprRequest, ShopSession, VapiConfig

logger = logging.getLogger(__name__)


def customer_call_log_filter(
    *,
    shop_domain: str,
    customer_email: str | None,
    customer_phone: str | None,
) -> ColumnElement[bool]:
    """Match call logs belonging to one customer of one shop.

    A log matches when its caller number equals the customer's phone or its
    transcript mentions the customer's email or phone. Empty identifiers are
    skipped so a customer without contact details matches nothing.
    """
    conditions: list[ColumnElement[bool]] = []
    if customer_phone:
        conditions.append(CallLog.phone_number == customer_phone)
        conditions.append(CallLog.transcript.contains(customer_phone, autoescape=True))
    if customer_email:
        conditions.append(CallLog.transcript.contains(customer_email, autoescape=True))
    if not conditions:
        return false()
    return (CallLog.shop_domain == shop_domain) & or_(*conditions)


def collect_customer_data(
    session: Session,
    *,
    shop_domain: str,
    customer_id: str | None,
    customer_email: str | None,
    customer_phone: str | None,
) -> dict[str, Any]:
    call_logs = session.scalars(
        select(CallLog)
        .where(
            customer_call_log_filter(
                shop_domain=shop_domain,
                customer_email=customer_email,
                customer_phone=customer_phone,
            )
        )
        .order_by(CallLog.created_at.asc())
    ).all()
    return {
        "shop": shop_domain,
        "customerId": customer_id,
        "customerEmail": customer_email,
        "customerPhone": customer_phone,
        "dataCollectedAt": datetime.now(timezone.utc).isoformat(),
        "callLogs": [
            {
                "callId": log.call_id,
                "phoneNumber": log.phone_number,
                "durationSeconds": log.duration_seconds,
                "transcript": log.transcript,
                "summary": log.summary,
                "date": log.created_at.isoformat() if log.created_at else None,
            }
            for log in call_logs
        ],
        "dataTypes": {
            "callLogs": len(call_logs),
            "transcripts": sum(1 for log in call_logs if log.transcript),
        },
    }


def redact_customer_data(
    session: Session,
    *,
    shop_domain: str,
    customer_email: str | None,
    customer_phone: str | None,
) -> int:
    result = session.execute(
        delete(CallLog)
        .where(
            customer_call_log_filter(
                shop_domain=shop_domain,
                customer_email=customer_email,
                customer_phone=customer_phone,
            )
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def _delete_for_shop(session: Session, model: type[Base], shop_domain: str) -> int:
    result = session.execute(
        delete(model).where(model.shop_domain == shop_domain).execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


_SHOP_DATA_TABLES: tuple[tuple[str, type[Base]], ...] = (
    ("sessions", ShopSession),
    ("vapiConfig", VapiConfig),
    ("callLogs", CallLog),
)


def redact_shop_data(
    session: Session,
    *,
    shop_domain: str,
    include_audit_trail: bool,
) -> dict[str, int]:
    """Delete every row the app stores for a shop in a single transaction.

    Commits on success. On any failure the transaction is rolled back and the
    error propagates, leaving all tables untouched.
    """
    tables = list(_SHOP_DATA_TABLES)
    if include_audit_trail:
        tables.append(("gdprRequests", GdprRequest))

    deleted: dict[str, int] = {}
    try:
        for label, model in tables:
            deleted[label] = _delete_for_shop(session, model, shop_domain)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return deleted


def log_gdpr_request(
    session: Session,
    *,
    shop_domain: str,
    request_type: GdprRequestTypeEnum,
    customer_id: str | None = None,
    customer_email: str | None = None,
    customer_phone: str | None = None,
    orders_requested: list[Any] | None = None,
    payload: dict[str, Any] | None = None,
) -> GdprRequest:
    gdpr_request = GdprRequest(
        shop_domain=shop_domain,
        request_type=request_type.value,
        status=GdprRequestStatusEnum.pending.value,
        customer_id=customer_id,
        customer_email=customer_email,
        customer_phone=customer_phone,
        orders_requested=json.dumps(orders_requested or []),
        payload=json.dumps(payload) if payload is not None else None,
    )
    session.add(gdpr_request)
    session.commit()
    session.refresh(gdpr_request)
    logger.info(
        "Privacy request logged",
        extra={"shop_domain": shop_domain, "request_type": request_type.value, "request_id": gdpr_request.id},
    )
    return gdpr_request


def update_gdpr_request_status(
    session: Session,
    gdpr_request: GdprRequest,
    status: GdprRequestStatusEnum,
    *,
    error: str | None = None,
    export_payload: dict[str, Any] | None = None,
) -> GdprRequest:
    gdpr_request.status = status.value
    gdpr_request.processed_at = datetime.now(timezone.utc)
    if error is not None:
        gdpr_request.error = error
    if export_payload is not None:
        gdpr_request.export_payload = json.dumps(export_payload)
    session.commit()
    return gdpr_request


def record_failed_request(
    session: Session,
    *,
    shop_domain: str,
    request_type: GdprRequestTypeEnum,
    error: str,
    payload: dict[str, Any] | None = None,
) -> None:
    """Write a ``failed`` audit row after the main transaction was rolled back."""
    try:
        session.add(
            GdprRequest(
                shop_domain=shop_domain,
                request_type=request_type.value,
                status=GdprRequestStatusEnum.failed.value,
                payload=json.dumps(payload) if payload is not None else None,
                error=error,
                processed_at=datetime.now(timezone.utc),
            )
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.exception(
            "Could not record failed privacy request",
            extra={"shop_domain": shop_domain, "request_type": request_type.value},
        )


def mark_request_failed(
    session: Session,
    gdpr_request: GdprRequest | None,
    *,
    shop_domain: str,
    request_type: GdprRequestTypeEnum,
    error: str,
    payload: dict[str, Any] | None = None,
) -> None:
    """Roll back and flag the request as ``failed`` without raising.

    Updates the pending row when one was logged, otherwise writes a new one.
    """
    session.rollback()
    if gdpr_request is None:
        record_failed_request(
            session,
            shop_domain=shop_domain,
            request_type=request_type,
            error=error,
            payload=payload,
        )
        return
    try:
        update_gdpr_request_status(session, gdpr_request, GdprRequestStatusEnum.failed, error=error)
    except Exception:
        session.rollback()
        logger.exception(
            "Could not mark privacy request failed",
            extra={"shop_domain": shop_domain, "request_type": request_type.value},
        )
