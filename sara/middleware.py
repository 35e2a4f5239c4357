"""
HTTP middleware for SARA: request IDs for log correlation and security headers.
"""

import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from structlog.contextvars import bind_contextvars, clear_contextvars

DOCS_PATHS = ("/docs", "/redoc", "/openapi")

API_CSP = "default-src 'self'"
# Swagger UI and ReDoc load their assets from jsdelivr and need inline scripts
DOCS_CSP = "; ".join(
    [
        "default-src 'self' 'unsafe-inline'",
        "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net",
        "img-src 'self' https://fastapi.tiangolo.com",
        "connect-src 'self' https://cdn.jsdelivr.net",
    ]
)
HSTS = "max-age=31536000; includeSubDomains"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    Bind a request ID into structlog's context and echo it on the response.

    Uses the caller's ``X-Request-ID`` header when present, otherwise a UUID4.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        clear_contextvars()
        bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all HTTP responses.

    - X-Content-Type-Options: nosniff
    - X-Frame-Options: DENY
    - Content-Security-Policy: strict, relaxed only for the Swagger/ReDoc pages
    - Strict-Transport-Security: only when served over HTTPS
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"

        is_docs = request.url.path.startswith(DOCS_PATHS)
        response.headers["Content-Security-Policy"] = DOCS_CSP if is_docs else API_CSP

        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = HSTS

        return response
