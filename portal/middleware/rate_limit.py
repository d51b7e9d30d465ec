"""Rate limiting using slowapi.

Protects the login and code endpoints from brute force. Limits are applied
per endpoint with ``@limiter.limit()``; the limiter is disabled in tests.
"""

from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from portal.config import settings

LOGIN_RATE = "10/minute"
VERIFY_RATE = "20/minute"
RESEND_RATE = "5/minute"
RECOVERY_RATE = "5/minute"


def _get_real_client_ip(request: Request) -> str:
    """Client IP, respecting X-Forwarded-For behind a reverse proxy."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(
    key_func=_get_real_client_ip,
    storage_uri="memory://",
    enabled=not settings.testing,
)


async def rate_limit_exceeded_handler(
    request: Request, exc: RateLimitExceeded
) -> JSONResponse:
    """Return a 429 JSON response when a rate limit is exceeded."""
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded: {exc.detail}"},
    )
