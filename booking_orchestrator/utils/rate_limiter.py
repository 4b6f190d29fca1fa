"""
Rate Limiter Configuration

Per-client request limits for public and webhook endpoints (slowapi).
Storage comes from RATE_LIMIT_STORAGE_URI: memory:// for a single
instance, redis:// when several API instances share the limits.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from ..config import settings


def get_real_client_ip(request: Request) -> str:
    """Get real client IP behind a reverse proxy"""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP (original client)
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


RATE_LIMITS = {
    "public": "60/minute",
    "booking_create": "10/hour",
    "webhook": "100/minute",
    "admin": "300/minute",
}


def get_rate_limit(endpoint_type: str) -> str:
    return RATE_LIMITS.get(endpoint_type, RATE_LIMITS["public"])


limiter = Limiter(
    key_func=get_real_client_ip,
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
    default_limits=[RATE_LIMITS["admin"]],
)
