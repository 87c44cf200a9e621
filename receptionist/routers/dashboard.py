from __future__ import annotations

import json
import logging
import random
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse, ORJSONResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from receptionist.config import settings
from receptionist.db import get_session
from receptionist.dependencies import AdminContext, get_shopify_api, get_vapi_api, require_admin_context
from receptionist.errors import ReauthorizationRequired
from receptionist.models import CallLog, GdprRequest
from receptionist.provisioning import (
    ProvisioningError,
    delete_assistant,
    ensure_vapi_config,
    provision_assistant,
    provision_phone_number,
    release_phone_number,
    update_assistant,
)
from receptionist.schemas import AssistantOptions
from receptionist.shopify_api import ShopifyApiClient, ShopifyApiError, ShopifyReauthRequiredError
from receptionist.vapi_api import VapiApiClient, VapiApiError, VapiNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/app", tags=["dashboard"])

templates = Jinja2Templates(directory=str(Path(__file__).resolve().parents[1] / "templates"))

COMPLIANCE_PAGE_SIZE = 100
DEMO_PRODUCT_COLORS = ("Red", "Orange", "Yellow", "Green")
DEMO_PRODUCT_PRICE = "100.00"


def _render(
    request: Request,
    template_name: str,
    admin: AdminContext,
    *,
    status_code: int = 200,
    **context: Any,
) -> HTMLResponse:
    base_context = {
        "api_key": settings.SHOPIFY_APP_API_KEY,
        "shop": admin.shop_domain,
        "query": admin.signed_query,
        "message": None,
        "error": None,
    }
    base_context.update(context)
    return templates.TemplateResponse(request, template_name, base_context, status_code=status_code)


def _assistant_options_from_form(form: Any) -> AssistantOptions:
    return AssistantOptions(
        name=form.get("assistantName"),
        model=form.get("model"),
        temperature=form.get("temperature"),
        voice_provider=form.get("voiceProvider"),
        voice_id=form.get("voiceId"),
        first_message=form.get("firstMessage"),
        end_call_message=form.get("endCallMessage"),
        system_prompt=form.get("systemPrompt"),
    )


async def _load_assistant(vapi_api: VapiApiClient, assistant_id: str | None) -> tuple[dict | None, str | None]:
    if not assistant_id:
        return None, None
    try:
        return await vapi_api.get_assistant(assistant_id=assistant_id), None
    except VapiNotFoundError:
        return None, "The assistant no longer exists upstream. Delete it here and create a new one."
    except VapiApiError as exc:
        logger.warning("Could not load assistant", extra={"assistant_id": assistant_id})
        return None, str(exc)


async def _load_phone_number(
    vapi_api: VapiApiClient, phone_number_id: str | None
) -> tuple[dict | None, str | None]:
    if not phone_number_id:
        return None, None
    try:
        return await vapi_api.get_phone_number(phone_number_id=phone_number_id), None
    except VapiNotFoundError:
        return None, "The phone number no longer exists upstream."
    except VapiApiError as exc:
        logger.warning("Could not load phone number", extra={"phone_number_id": phone_number_id})
        return None, str(exc)


@router.get("", response_class=HTMLResponse)
async def dashboard_index(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
):
    config = ensure_vapi_config(session, admin.shop_domain)
    call_count = session.scalar(
        select(func.count()).select_from(CallLog).where(CallLog.shop_domain == admin.shop_domain)
    )
    return _render(request, "index.html", admin, config=config, call_count=call_count or 0, product=None)


@router.post("", response_class=HTMLResponse)
async def dashboard_generate_product(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
    shopify_api: ShopifyApiClient = Depends(get_shopify_api),
):
    config = ensure_vapi_config(session, admin.shop_domain)
    call_count = session.scalar(
        select(func.count()).select_from(CallLog).where(CallLog.shop_domain == admin.shop_domain)
    )
    title = f"{random.choice(DEMO_PRODUCT_COLORS)} Snowboard"
    access_token = admin.shop_session.access_token
    try:
        product = await shopify_api.create_product(
            shop_domain=admin.shop_domain,
            access_token=access_token,
            title=title,
        )
        variant_edges = ((product.get("variants") or {}).get("edges")) or []
        variants = [edge.get("node") or {} for edge in variant_edges]
        if variants and variants[0].get("id"):
            updated = await shopify_api.update_variant_prices(
                shop_domain=admin.shop_domain,
                access_token=access_token,
                product_gid=product["id"],
                variants=[{"id": variants[0]["id"], "price": DEMO_PRODUCT_PRICE}],
            )
            product["variants"] = updated
    except ShopifyReauthRequiredError as exc:
        raise ReauthorizationRequired(admin.shop_domain) from exc
    except ShopifyApiError as exc:
        return _render(
            request,
            "index.html",
            admin,
            status_code=exc.status_code,
            config=config,
            call_count=call_count or 0,
            product=None,
            error=str(exc),
        )
    return _render(
        request,
        "index.html",
        admin,
        config=config,
        call_count=call_count or 0,
        product=product,
        message=f"Created {product.get('title') or title}",
    )


@router.get("/assistant", response_class=HTMLResponse)
async def assistant_page(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
    vapi_api: VapiApiClient = Depends(get_vapi_api),
):
    config = ensure_vapi_config(session, admin.shop_domain)
    assistant, error = await _load_assistant(vapi_api, config.assistant_id)
    return _render(request, "assistant.html", admin, config=config, assistant=assistant, error=error)


@router.post("/assistant", response_class=HTMLResponse)
async def assistant_action(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
    vapi_api: VapiApiClient = Depends(get_vapi_api),
):
    form = await request.form()
    action = form.get("action")
    message: str | None = None
    try:
        if action == "create_assistant":
            _, created = await provision_assistant(
                session,
                vapi_api,
                shop_domain=admin.shop_domain,
                options=_assistant_options_from_form(form),
            )
            message = "Assistant created" if created else "Assistant already exists"
        elif action == "update_assistant":
            await update_assistant(
                session,
                vapi_api,
                shop_domain=admin.shop_domain,
                options=_assistant_options_from_form(form),
            )
            message = "Assistant updated"
        elif action == "delete_assistant":
            deleted = await delete_assistant(session, vapi_api, shop_domain=admin.shop_domain)
            message = "Assistant deleted" if deleted else "No assistant to delete"
        else:
            raise ProvisioningError(message="Invalid action")
    except ValidationError as exc:
        session.rollback()
        return await _assistant_error(request, admin, session, vapi_api, "Invalid assistant settings", 400, exc)
    except (ProvisioningError, VapiApiError) as exc:
        session.rollback()
        return await _assistant_error(request, admin, session, vapi_api, str(exc), exc.status_code, exc)

    config = ensure_vapi_config(session, admin.shop_domain)
    assistant, error = await _load_assistant(vapi_api, config.assistant_id)
    return _render(
        request, "assistant.html", admin, config=config, assistant=assistant, message=message, error=error
    )


async def _assistant_error(
    request: Request,
    admin: AdminContext,
    session: Session,
    vapi_api: VapiApiClient,
    error: str,
    status_code: int,
    exc: Exception,
) -> HTMLResponse:
    logger.warning("Assistant action failed", extra={"shop_domain": admin.shop_domain, "error": str(exc)})
    config = ensure_vapi_config(session, admin.shop_domain)
    assistant, _ = await _load_assistant(vapi_api, config.assistant_id)
    return _render(
        request,
        "assistant.html",
        admin,
        status_code=status_code,
        config=config,
        assistant=assistant,
        error=error,
    )


@router.get("/phone-numbers", response_class=HTMLResponse)
async def phone_numbers_page(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
    vapi_api: VapiApiClient = Depends(get_vapi_api),
):
    config = ensure_vapi_config(session, admin.shop_domain)
    phone, error = await _load_phone_number(vapi_api, config.phone_number_id)
    return _render(request, "phone_numbers.html", admin, config=config, phone=phone, error=error)


@router.post("/phone-numbers", response_class=HTMLResponse)
async def phone_numbers_action(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
    vapi_api: VapiApiClient = Depends(get_vapi_api),
):
    form = await request.form()
    action = form.get("action")
    try:
        if action == "provision_number":
            _, created = await provision_phone_number(session, vapi_api, shop_domain=admin.shop_domain)
            message = "Phone number provisioned" if created else "Phone number already provisioned"
        elif action == "release_number":
            released = await release_phone_number(session, vapi_api, shop_domain=admin.shop_domain)
            message = "Phone number released" if released else "No phone number to release"
        else:
            raise ProvisioningError(message="Invalid action")
    except (ProvisioningError, VapiApiError) as exc:
        session.rollback()
        logger.warning("Phone number action failed", extra={"shop_domain": admin.shop_domain, "error": str(exc)})
        config = ensure_vapi_config(session, admin.shop_domain)
        return _render(
            request,
            "phone_numbers.html",
            admin,
            status_code=exc.status_code,
            config=config,
            phone=None,
            error=str(exc),
        )

    config = ensure_vapi_config(session, admin.shop_domain)
    phone, error = await _load_phone_number(vapi_api, config.phone_number_id)
    return _render(
        request, "phone_numbers.html", admin, config=config, phone=phone, message=message, error=error
    )


@router.get("/settings", response_class=HTMLResponse)
async def settings_page(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
):
    config = ensure_vapi_config(session, admin.shop_domain)
    return _render(
        request,
        "settings.html",
        admin,
        config=config,
        signature_header=settings.VAPI_SIGNATURE_HEADER,
        server_url=settings.vapi_server_url,
    )


@router.get("/compliance", response_class=HTMLResponse)
async def compliance_page(
    request: Request,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
):
    gdpr_requests = session.scalars(
        select(GdprRequest)
        .where(GdprRequest.shop_domain == admin.shop_domain)
        .order_by(GdprRequest.created_at.desc(), GdprRequest.id.desc())
        .limit(COMPLIANCE_PAGE_SIZE)
    ).all()
    type_counts = dict(
        session.execute(
            select(GdprRequest.request_type, func.count())
            .where(GdprRequest.shop_domain == admin.shop_domain)
            .group_by(GdprRequest.request_type)
        ).all()
    )
    status_counts = dict(
        session.execute(
            select(GdprRequest.status, func.count())
            .where(GdprRequest.shop_domain == admin.shop_domain)
            .group_by(GdprRequest.status)
        ).all()
    )
    return _render(
        request,
        "compliance.html",
        admin,
        gdpr_requests=gdpr_requests,
        type_counts=type_counts,
        status_counts=status_counts,
        total=sum(type_counts.values()),
    )


@router.get("/compliance/{request_id}/export")
async def compliance_export(
    request_id: int,
    admin: AdminContext = Depends(require_admin_context),
    session: Session = Depends(get_session),
):
    gdpr_request = session.get(GdprRequest, request_id)
    if gdpr_request is None or gdpr_request.shop_domain != admin.shop_domain:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    if not gdpr_request.export_payload:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No export available for this request")
    return ORJSONResponse(
        content=json.loads(gdpr_request.export_payload),
        headers={"Content-Disposition": f'attachment; filename="data-request-{request_id}.json"'},
    )
