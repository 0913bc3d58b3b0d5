from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from passkey_gate.core.config import settings


def get_real_client_ip(request: Request) -> str:
    """Client IP, honouring X-Forwarded-For only behind a trusted proxy."""
    if settings.TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            first_hop = forwarded_for.split(",")[0].strip()
            if first_hop:
                return first_hop
    return get_remote_address(request)


# Ceremony endpoints are limited per client IP
limiter = Limiter(key_func=get_real_client_ip)
