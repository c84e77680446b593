# app/core/client_ip.py
from starlette.requests import HTTPConnection

from app.core.config import settings


def extract_client_ip(request: HTTPConnection) -> str:
    """X-Forwarded-For（第一個）→ X-Real-IP → socket 位址"""
    if settings.TRUST_FORWARDED_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()
    return (request.client.host if request.client else "unknown") or "unknown"
