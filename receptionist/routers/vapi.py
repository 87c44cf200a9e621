# Annotations stay evaluated: the rate-limit wrapper is introspected with its own module globals.
import logging
from collections.abc import Sequence

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import ORJSONResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from receptionist.config import settings
from receptionist.db import get_session
from receptionist.dependencies import get_shopify_api
from receptionist.rate_limit import api_rate_limit, limiter
from receptionist.resolvers import get_valid_session, resolve_shop_by_signature
from receptionist.schemas import ToolCallResponse, ToolCallResult, VapiServerMessage
from receptionist.shopify_api import (
    ShopifyApiClient,
    ShopifyApiError,
    ShopifyRateLimitError,
    ShopifyReauthRequiredError,
)
from receptionist.vapi_functions import UnknownFunctionError, execute_tool_call, ingest_call_report

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vapi", tags=["vapi"])


def _tool_call_response(
    message: str,
    tool_call_ids: Sequence[str | None],
    *,
    status_code: int,
    retry_after: float | None = None,
) -> ORJSONResponse:
    ids = [tool_call_id or "unknown" for tool_call_id in tool_call_ids] or ["unknown"]
    body = ToolCallResponse(
        results=[ToolCallResult(toolCallId=tool_call_id, result=f"Error: {message}") for tool_call_id in ids]
    )
    headers = None
    if retry_after is not None:
        headers = {"Retry-After": str(max(int(retry_after), 1))}
    return ORJSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


@router.post("/functions")
@limiter.limit(api_rate_limit)
async def vapi_functions(
    request: Request,
    session: Session = Depends(get_session),
    shopify_api: ShopifyApiClient = Depends(get_shopify_api),
):
    try:
        raw_body = await request.json()
    except ValueError:
        return _tool_call_response("Invalid JSON body", [], status_code=status.HTTP_400_BAD_REQUEST)
    try:
        server_message = VapiServerMessage.model_validate(raw_body)
    except ValidationError:
        return _tool_call_response("Invalid request body", [], status_code=status.HTTP_400_BAD_REQUEST)

    message = server_message.message
    tool_calls = message.toolCallList
    tool_call_ids = [tool_call.id for tool_call in tool_calls]

    secret = request.headers.get(settings.VAPI_SIGNATURE_HEADER)
    if not secret:
        return _tool_call_response(
            "Missing authentication header", tool_call_ids, status_code=status.HTTP_401_UNAUTHORIZED
        )

    shop_domain = resolve_shop_by_signature(session, secret)
    if shop_domain is None:
        logger.warning("Rejected vendor call with unknown secret")
        return _tool_call_response(
            "Invalid authentication signature", tool_call_ids, status_code=status.HTTP_401_UNAUTHORIZED
        )

    requested_shop = request.query_params.get("shop")
    if requested_shop and requested_shop.strip().lower() != shop_domain:
        logger.warning("Vendor call named a different shop", extra={"shop_domain": shop_domain})
        return _tool_call_response(
            "Invalid authentication signature", tool_call_ids, status_code=status.HTTP_401_UNAUTHORIZED
        )

    if message.type == "end-of-call-report":
        ingest_call_report(session, shop_domain=shop_domain, message=message)
        return ORJSONResponse(status_code=status.HTTP_200_OK, content={"received": True})

    if not tool_calls or any(not tool_call.id or not tool_call.function.name for tool_call in tool_calls):
        return _tool_call_response(
            "Missing function call information", tool_call_ids, status_code=status.HTTP_400_BAD_REQUEST
        )

    shop_session = get_valid_session(session, shop_domain)
    if shop_session is None:
        return _tool_call_response(
            "Store not connected to Shopify", tool_call_ids, status_code=status.HTTP_401_UNAUTHORIZED
        )

    results: list[ToolCallResult] = []
    for tool_call in tool_calls:
        try:
            result = await execute_tool_call(shopify_api, shop_session, tool_call)
        except UnknownFunctionError as exc:
            return _tool_call_response(str(exc), [tool_call.id], status_code=status.HTTP_400_BAD_REQUEST)
        except ShopifyReauthRequiredError as exc:
            logger.warning("Shopify token rejected", extra={"shop_domain": shop_domain})
            return _tool_call_response(str(exc), [tool_call.id], status_code=status.HTTP_401_UNAUTHORIZED)
        except ShopifyRateLimitError as exc:
            return _tool_call_response(
                str(exc),
                [tool_call.id],
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                retry_after=exc.retry_after,
            )
        except ShopifyApiError as exc:
            logger.warning(
                "Shopify call failed during vendor function",
                extra={"shop_domain": shop_domain, "function": tool_call.function.name},
            )
            return _tool_call_response(
                str(exc), [tool_call.id], status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        except Exception:
            logger.exception(
                "Vendor function crashed",
                extra={"shop_domain": shop_domain, "function": tool_call.function.name},
            )
            return _tool_call_response(
                "Internal error", [tool_call.id], status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        results.append(ToolCallResult(toolCallId=tool_call.id, result=result))

    return ORJSONResponse(status_code=status.HTTP_200_OK, content=ToolCallResponse(results=results).model_dump())
