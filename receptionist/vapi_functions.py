from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from receptionist.models import CallLog, ShopSession
from receptionist.schemas import VapiMessage, VapiToolCall
from receptionist.shopify_api import ShopifyApiClient

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_LIMIT = 10
MAX_PRODUCT_LIMIT = 50


class UnknownFunctionError(ValueError):
    def __init__(self, name: str | None) -> None:
        super().__init__(f"Unknown function: {name}")
        self.name = name


def _product_line(index: int, product: dict[str, Any], *, with_description: bool = False) -> str:
    line = f"{index}. {product['title']} - ${product['price']} ({product['inventory']} in stock)"
    description = product.get("description")
    if with_description and description:
        line = f"{line} - {description}"
    return line


def format_product_list(products: list[dict[str, Any]]) -> str:
    if not products:
        return "No products found in the store"
    lines = ". ".join(_product_line(index, product) for index, product in enumerate(products, start=1))
    return f"Here are our available products: {lines}"


def format_search_results(query: str, products: list[dict[str, Any]]) -> str:
    if not products:
        return f'No products found matching "{query}"'
    lines = ". ".join(
        _product_line(index, product, with_description=True) for index, product in enumerate(products, start=1)
    )
    return f'I found {len(products)} product(s) matching "{query}": {lines}'


def _format_order_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        placed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return f"{placed.month}/{placed.day}/{placed.year}"


def format_order(order: dict[str, Any]) -> str:
    parts = [
        f"Order {order['name']}",
        f"Status: {order.get('displayFulfillmentStatus') or 'UNKNOWN'}",
        f"Total: ${order.get('totalPrice') or '0.00'}",
    ]
    placed_on = _format_order_date(order.get("createdAt"))
    if placed_on:
        parts.append(f"Placed on {placed_on}")
    return ", ".join(parts)


def _coerce_limit(value: Any) -> int:
    try:
        limit = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRODUCT_LIMIT
    if limit < 1:
        return DEFAULT_PRODUCT_LIMIT
    return min(limit, MAX_PRODUCT_LIMIT)


def _string_arg(arguments: dict[str, Any], *names: str) -> str:
    for name in names:
        value = arguments.get(name)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""


async def _get_products(shopify_api: ShopifyApiClient, shop_session: ShopSession, arguments: dict[str, Any]) -> str:
    products = await shopify_api.list_products(
        shop_domain=shop_session.shop_domain,
        access_token=shop_session.access_token,
        limit=_coerce_limit(arguments.get("limit")),
    )
    return format_product_list(products)


async def _search_products(
    shopify_api: ShopifyApiClient, shop_session: ShopSession, arguments: dict[str, Any]
) -> str:
    query = _string_arg(arguments, "query", "keyword")
    if not query:
        return "Please provide a search term"
    products = await shopify_api.search_products(
        shop_domain=shop_session.shop_domain,
        access_token=shop_session.access_token,
        query=query,
    )
    return format_search_results(query, products)


async def _check_order_status(
    shopify_api: ShopifyApiClient, shop_session: ShopSession, arguments: dict[str, Any]
) -> str:
    order_number = _string_arg(arguments, "orderNumber", "order_number")
    email = _string_arg(arguments, "email")
    if not order_number and not email:
        return "Please provide either an order number or email address"
    order = await shopify_api.get_order_status(
        shop_domain=shop_session.shop_domain,
        access_token=shop_session.access_token,
        order_number=order_number or None,
        email=email or None,
    )
    if order is None:
        if order_number:
            return f"Order {order_number} not found"
        return f"No orders found for {email}"
    return format_order(order)


FUNCTION_HANDLERS = {
    "get_products": _get_products,
    "search_products": _search_products,
    "check_order_status": _check_order_status,
}


async def execute_tool_call(
    shopify_api: ShopifyApiClient,
    shop_session: ShopSession,
    tool_call: VapiToolCall,
) -> str:
    name = tool_call.function.name
    handler = FUNCTION_HANDLERS.get(name or "")
    if handler is None:
        raise UnknownFunctionError(name)
    logger.info(
        "Executing vendor function",
        extra={"shop_domain": shop_session.shop_domain, "function": name, "tool_call_id": tool_call.id},
    )
    return await handler(shopify_api, shop_session, tool_call.function.arguments)


def _report_text(message: VapiMessage, field: str) -> str | None:
    value = getattr(message, field)
    if value:
        return value
    source = message.artifact if field == "transcript" else message.analysis
    nested = source.get(field)
    return nested if isinstance(nested, str) and nested else None


def ingest_call_report(session: Session, *, shop_domain: str, message: VapiMessage) -> CallLog | None:
    """Store an end-of-call report; a repeated report for the same call is ignored."""
    call_id = message.call.id if message.call else None
    if not call_id:
        logger.warning("End-of-call report without call id", extra={"shop_domain": shop_domain})
        return None

    existing = session.scalars(select(CallLog).where(CallLog.call_id == call_id)).first()
    if existing is not None:
        return existing

    customer_number = None
    if message.call and isinstance(message.call.customer.get("number"), str):
        customer_number = message.call.customer["number"]

    call_log = CallLog(
        call_id=call_id,
        shop_domain=shop_domain,
        phone_number=customer_number,
        duration_seconds=int(message.durationSeconds) if message.durationSeconds is not None else None,
        transcript=_report_text(message, "transcript"),
        summary=_report_text(message, "summary"),
    )
    session.add(call_log)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        return session.scalars(select(CallLog).where(CallLog.call_id == call_id)).first()
    logger.info("Stored call report", extra={"shop_domain": shop_domain, "call_id": call_id})
    return call_log
