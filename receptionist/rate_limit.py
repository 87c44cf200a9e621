from __future__ import annotations

import logging

from fastapi import Request
from fastapi.responses import ORJSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from receptionist.config import settings
from receptionist.errors import error_response

logger = logging.getLogger(__name__)


def client_ip_key(request: Request) -> str:
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first_hop = forwarded_for.split(",")[0].strip()
        if first_hop:
            return first_hop
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return get_remote_address(request) or "unknown"


def api_rate_limit() -> str:
    return settings.API_RATE_LIMIT


limiter = Limiter(key_func=client_ip_key, headers_enabled=False)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> ORJSONResponse:
    retry_after = exc.limit.limit.get_expiry()
    logger.warning(
        "Rate limit exceeded",
        extra={"path": request.url.path, "client": client_ip_key(request), "limit": str(exc.limit.limit)},
    )
    return error_response(
        "Too many requests, please try again later.",
        status_code=429,
        retry_after=retry_after,
    )
