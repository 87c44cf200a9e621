from __future__ import annotations

import logging
from typing import Any

import httpx

from receptionist.config import settings
from receptionist.shopify_api import _parse_retry_after

logger = logging.getLogger(__name__)

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get_products",
            "description": "List products currently available in the store with price and stock.",
            "parameters": {
                "type": "object",
                "properties": {
                    "limit": {"type": "integer", "description": "Maximum number of products to return."},
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_products",
            "description": "Search the store's products by keyword.",
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Keyword the caller is looking for."},
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "check_order_status",
            "description": "Look up an order by order number or by the customer's email address.",
            "parameters": {
                "type": "object",
                "properties": {
                    "orderNumber": {"type": "string", "description": "Order number, for example #1001."},
                    "email": {"type": "string", "description": "Email address used for the order."},
                },
            },
        },
    },
]


def default_system_prompt(shop_domain: str) -> str:
    return (
        "You are a friendly AI receptionist for an online store.\n\n"
        "Your role:\n"
        "- Answer questions about products and inventory\n"
        "- Help customers find what they're looking for\n"
        "- Be helpful, professional, and concise\n\n"
        "Important rules:\n"
        "- Never make up product information - always use the get_products tool\n"
        "- Keep responses brief and conversational (this is a phone call)\n"
        "- If you don't know something, be honest and offer to transfer to a human\n\n"
        f"The store you're representing is: {shop_domain}"
    )


def build_assistant_payload(
    *,
    shop_domain: str,
    vapi_signature: str,
    name: str | None = None,
    model: str | None = None,
    temperature: float | None = None,
    voice_provider: str | None = None,
    voice_id: str | None = None,
    first_message: str | None = None,
    end_call_message: str | None = None,
    system_prompt: str | None = None,
) -> dict[str, Any]:
    shop_name = shop_domain.removesuffix(".myshopify.com")
    return {
        "name": name or f"{shop_name} Receptionist",
        "model": {
            "provider": "openai",
            "model": model or settings.VAPI_DEFAULT_MODEL,
            "temperature": settings.VAPI_DEFAULT_TEMPERATURE if temperature is None else temperature,
            "messages": [
                {"role": "system", "content": system_prompt or default_system_prompt(shop_domain)},
            ],
            "tools": TOOL_DEFINITIONS,
        },
        "voice": {
            "provider": voice_provider or settings.VAPI_DEFAULT_VOICE_PROVIDER,
            "voiceId": voice_id or settings.VAPI_DEFAULT_VOICE_ID,
        },
        "firstMessage": first_message or settings.VAPI_DEFAULT_FIRST_MESSAGE,
        "endCallMessage": end_call_message or settings.VAPI_DEFAULT_END_CALL_MESSAGE,
        "serverUrl": settings.vapi_server_url,
        "serverUrlSecret": vapi_signature,
    }


class VapiApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class VapiAuthError(VapiApiError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=401)


class VapiRateLimitError(VapiApiError):
    def __init__(self, *, message: str, retry_after: float | None = None) -> None:
        super().__init__(message=message, status_code=429)
        self.retry_after = retry_after


class VapiNotFoundError(VapiApiError):
    def __init__(self, *, message: str) -> None:
        super().__init__(message=message, status_code=404)


class VapiApiClient:
    """Thin REST wrapper over the vendor's assistant and phone-number resources."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._timeout = settings.VAPI_REQUEST_TIMEOUT_SECONDS
        self._transport = transport

    async def create_assistant(self, *, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", "/assistant", payload=payload, action="create assistant")

    async def get_assistant(self, *, assistant_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/assistant/{assistant_id}", action="fetch assistant")

    async def update_assistant(self, *, assistant_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH", f"/assistant/{assistant_id}", payload=updates, action="update assistant"
        )

    async def delete_assistant(self, *, assistant_id: str) -> None:
        await self._request("DELETE", f"/assistant/{assistant_id}", action="delete assistant")

    async def create_phone_number(
        self,
        *,
        provider: str,
        assistant_id: str | None = None,
        name: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"provider": provider}
        if assistant_id:
            payload["assistantId"] = assistant_id
        if name:
            payload["name"] = name
        return await self._request("POST", "/phone-number", payload=payload, action="provision phone number")

    async def get_phone_number(self, *, phone_number_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/phone-number/{phone_number_id}", action="fetch phone number")

    async def update_phone_number(self, *, phone_number_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return await self._request(
            "PATCH", f"/phone-number/{phone_number_id}", payload=updates, action="update phone number"
        )

    async def delete_phone_number(self, *, phone_number_id: str) -> None:
        await self._request("DELETE", f"/phone-number/{phone_number_id}", action="release phone number")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        if isinstance(body, dict):
            message = body.get("message") or body.get("error")
            if isinstance(message, list):
                return "; ".join(str(item) for item in message)
            if message:
                return str(message)
        return response.text or response.reason_phrase

    async def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{settings.vapi_base_url}{path}"
        headers = {"Authorization": f"Bearer {settings.VAPI_PRIVATE_KEY}"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise VapiApiError(message=f"Network error while trying to {action}: {exc}") from exc

        if response.status_code in (401, 403):
            raise VapiAuthError(message=f"Failed to {action}: vendor rejected the API key")
        if response.status_code == 429:
            raise VapiRateLimitError(
                message=f"Failed to {action}: vendor rate limit exceeded",
                retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            )
        if response.status_code == 404:
            raise VapiNotFoundError(message=f"Failed to {action}: resource not found")
        if response.status_code >= 400:
            logger.warning(
                "Vendor API call failed",
                extra={"action": action, "status_code": response.status_code},
            )
            raise VapiApiError(message=f"Failed to {action}: {self._error_message(response)}")

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as exc:
            raise VapiApiError(message=f"Failed to {action}: vendor returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise VapiApiError(message=f"Failed to {action}: vendor response must be a JSON object")
        return body
