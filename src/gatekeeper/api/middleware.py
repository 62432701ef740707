from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
import structlog

from gatekeeper.core.context import RequestContext, client_ip_from_headers, reset_request, set_request
from gatekeeper.core.exceptions import RateLimitExceeded
from gatekeeper.core.strategies.base import now_millis

logger = structlog.get_logger()


def _first_header(request: Request, *names: str) -> str | None:
    for name in names:
        value = request.headers.get(name)
        if value:
            return value
    return None


def request_context_from(request: Request) -> RequestContext:
    peer = request.client.host if request.client else None
    return RequestContext(
        client_ip=client_ip_from_headers(request.headers, peer),
        principal=_first_header(request, "X-User-Id"),
        role=_first_header(request, "X-User-Role"),
        user_agent=_first_header(request, "User-Agent"),
        referer=_first_header(request, "Referer"),
        device_id=_first_header(request, "Device-Id", "X-Device-Id"),
        app_id=_first_header(request, "App-Id", "X-App-Id"),
        path=request.url.path,
        method=request.method,
        now_ms=now_millis(),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Captures the ambient request context for guarded operations.

    Admission itself happens at the operation boundary (RateLimiter.limit);
    this middleware only makes caller address, principal and the rest
    visible there through a ContextVar.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        context = request_context_from(request)
        client_id = f"user:{context.principal}" if context.principal else f"ip:{context.client_ip}"

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            client_id=client_id,
            path=request.url.path,
            method=request.method,
        )

        token = set_request(context)
        try:
            return await call_next(request)
        finally:
            reset_request(token)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    now_ms = now_millis()
    payload = exc.to_payload(now_ms)
    status_code = exc.error_code if 400 <= exc.error_code < 600 else 429

    headers = {
        "X-RateLimit-Limit": str(exc.limit),
        "X-RateLimit-Remaining": str(exc.remaining),
        "X-RateLimit-Reset": str(exc.reset_at // 1000),
        "Retry-After": str(payload["retry_after"] or 1),
    }
    if exc.hotspot:
        headers["X-RateLimit-Hotspot-Level"] = str(exc.hotspot_level)

    logger.info(
        "rate_limit_rejected",
        status_code=status_code,
        remaining=exc.remaining,
        limit=exc.limit,
        hotspot=exc.hotspot,
    )
    return JSONResponse(status_code=status_code, content=payload, headers=headers)
