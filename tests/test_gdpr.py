from __future__ import annotations

import pytest
from sqlalchemy import func, select

import receptionist.gdpr as gdpr_module
from receptionist.enums import GdprRequestStatusEnum, GdprRequestTypeEnum
from receptionist.gdpr import (
    collect_customer_data,
    log_gdpr_request,
    redact_customer_data,
    redact_shop_data,
    update_gdpr_request_status,
)
from receptionist.models import CallLog, GdprRequest, ShopSession, VapiConfig

SHOP = "example.myshopify.com"
OTHER_SHOP = "other.myshopify.com"


def _count(session, model, shop_domain: str) -> int:
    return session.scalar(select(func.count()).select_from(model).where(model.shop_domain == shop_domain))


def _add_call(session, call_id: str, shop_domain: str = SHOP, *, phone: str | None = None, transcript: str = ""):
    session.add(CallLog(call_id=call_id, shop_domain=shop_domain, phone_number=phone, transcript=transcript))


def _seed_full_shop(session, shop_domain: str, secret: str) -> None:
    session.add(ShopSession(id=f"offline_{shop_domain}", shop_domain=shop_domain, access_token="tok"))
    session.add(VapiConfig(shop_domain=shop_domain, vapi_signature=secret))
    _add_call(session, f"{shop_domain}-call", shop_domain, phone="+15550000000")
    session.add(GdprRequest(shop_domain=shop_domain, request_type=GdprRequestTypeEnum.data_request.value))
    session.commit()


def test_collect_customer_data_matches_phone_and_transcript(db_session):
    _add_call(db_session, "by-phone", phone="+15551234567")
    _add_call(db_session, "by-email", transcript="my email is jane@example.com thanks")
    _add_call(db_session, "by-spoken-phone", transcript="call me on +15551234567")
    _add_call(db_session, "unrelated", phone="+15559999999", transcript="hello")
    _add_call(db_session, "other-shop", OTHER_SHOP, phone="+15551234567")
    db_session.commit()

    export = collect_customer_data(
        db_session,
        shop_domain=SHOP,
        customer_id="7",
        customer_email="jane@example.com",
        customer_phone="+15551234567",
    )

    assert sorted(log["callId"] for log in export["callLogs"]) == ["by-email", "by-phone", "by-spoken-phone"]
    assert export["dataTypes"] == {"callLogs": 3, "transcripts": 2}
    assert export["customerId"] == "7"


def test_customer_without_identifiers_matches_nothing(db_session):
    _add_call(db_session, "anonymous", phone=None, transcript="")
    db_session.commit()

    deleted = redact_customer_data(db_session, shop_domain=SHOP, customer_email=None, customer_phone="")
    db_session.commit()

    assert deleted == 0
    assert _count(db_session, CallLog, SHOP) == 1


def test_redact_customer_data_leaves_other_shops(db_session):
    _add_call(db_session, "mine", phone="+15551234567")
    _add_call(db_session, "theirs", OTHER_SHOP, phone="+15551234567")
    _add_call(db_session, "someone-else", phone="+15550000000")
    db_session.commit()

    deleted = redact_customer_data(
        db_session, shop_domain=SHOP, customer_email="jane@example.com", customer_phone="+15551234567"
    )
    db_session.commit()

    assert deleted == 1
    assert _count(db_session, CallLog, SHOP) == 1
    assert _count(db_session, CallLog, OTHER_SHOP) == 1


def test_redact_shop_data_empties_every_table(db_session):
    _seed_full_shop(db_session, SHOP, "a" * 64)
    _seed_full_shop(db_session, OTHER_SHOP, "b" * 64)

    deleted = redact_shop_data(db_session, shop_domain=SHOP, include_audit_trail=True)

    assert deleted == {"sessions": 1, "vapiConfig": 1, "callLogs": 1, "gdprRequests": 1}
    for model in (ShopSession, VapiConfig, CallLog, GdprRequest):
        assert _count(db_session, model, SHOP) == 0
        assert _count(db_session, model, OTHER_SHOP) == 1

    again = redact_shop_data(db_session, shop_domain=SHOP, include_audit_trail=True)
    assert again == {"sessions": 0, "vapiConfig": 0, "callLogs": 0, "gdprRequests": 0}


def test_redact_shop_data_is_all_or_nothing(db_session, monkeypatch):
    _seed_full_shop(db_session, SHOP, "a" * 64)
    original_delete = gdpr_module._delete_for_shop

    def failing_delete(session, model, shop_domain):
        if model is CallLog:
            raise RuntimeError("disk full")
        return original_delete(session, model, shop_domain)

    monkeypatch.setattr(gdpr_module, "_delete_for_shop", failing_delete)

    with pytest.raises(RuntimeError, match="disk full"):
        redact_shop_data(db_session, shop_domain=SHOP, include_audit_trail=True)

    for model in (ShopSession, VapiConfig, CallLog, GdprRequest):
        assert _count(db_session, model, SHOP) == 1


def test_gdpr_request_lifecycle(db_session):
    gdpr_request = log_gdpr_request(
        db_session,
        shop_domain=SHOP,
        request_type=GdprRequestTypeEnum.customer_redact,
        customer_id="7",
        orders_requested=[1, 2],
        payload={"shop_domain": SHOP},
    )
    assert gdpr_request.status == GdprRequestStatusEnum.pending.value
    assert gdpr_request.orders_requested == "[1, 2]"

    update_gdpr_request_status(db_session, gdpr_request, GdprRequestStatusEnum.completed)

    stored = db_session.get(GdprRequest, gdpr_request.id)
    assert stored.status == "completed"
    assert stored.processed_at is not None
