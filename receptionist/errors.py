from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi.responses import ORJSONResponse


class ReauthorizationRequired(Exception):
    """Raised from dashboard routes when the shop has no usable offline token."""

    def __init__(self, shop_domain: str) -> None:
        super().__init__(f"Shop {shop_domain} must reauthorize the app")
        self.shop_domain = shop_domain


def error_payload(message: str) -> dict[str, Any]:
    return {"error": message, "timestamp": datetime.now(timezone.utc).isoformat()}


def error_response(
    message: str,
    *,
    status_code: int,
    retry_after: float | None = None,
) -> ORJSONResponse:
    headers = None
    if retry_after is not None:
        headers = {"Retry-After": str(max(int(retry_after), 1))}
    return ORJSONResponse(status_code=status_code, content=error_payload(message), headers=headers)
