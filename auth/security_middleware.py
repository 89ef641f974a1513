"""
Security middleware for FastAPI:
- Security headers (CSP, HSTS, X-Frame-Options, etc.)
- No-store caching headers on token responses
- HTTPS enforcement
- Security logging for auth and oauth endpoints
"""

import logging
import os

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to all responses.

    Headers added:
    - Strict-Transport-Security (HSTS)
    - X-Frame-Options
    - X-Content-Type-Options
    - Content-Security-Policy
    - Referrer-Policy
    - Permissions-Policy
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        # Content Security Policy
        csp = (
            "default-src 'self'; "
            "img-src 'self' data: https:; "
            "frame-ancestors 'none'; "
            "base-uri 'self'; "
            "form-action 'self' https:;"
        )
        response.headers["Content-Security-Policy"] = csp
        # Authorization codes travel in redirect URLs; never leak them through Referer
        response.headers["Referrer-Policy"] = "no-referrer"

        permissions = (
            "geolocation=(), "
            "microphone=(), "
            "camera=(), "
            "payment=()"
        )
        response.headers["Permissions-Policy"] = permissions

        return response


class NoStoreMiddleware(BaseHTTPMiddleware):
    """Responses carrying credentials must not be cached (RFC 6749 section 5.1)"""

    def __init__(self, app, paths: list = None):
        super().__init__(app)
        self.paths = paths or ["/oauth/token", "/auth/login"]

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if request.url.path in self.paths:
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"
        return response


class HTTPSEnforcementMiddleware(BaseHTTPMiddleware):
    """Enforce HTTPS in production"""

    async def dispatch(self, request: Request, call_next):
        if os.getenv("ENVIRONMENT") == "production":
            scheme = request.url.scheme
            x_forwarded_proto = request.headers.get("x-forwarded-proto")

            if scheme != "https" and x_forwarded_proto != "https":
                return JSONResponse(status_code=403, content={"detail": "HTTPS required"})

        return await call_next(request)


class SecurityLoggingMiddleware(BaseHTTPMiddleware):
    """Log security-relevant events"""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not (path.startswith("/auth") or path.startswith("/oauth")):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        user_agent = request.headers.get("user-agent", "unknown")

        response = await call_next(request)

        message = f"{request.method} {path} -> {response.status_code} from {client_ip} - {user_agent}"
        if response.status_code in (401, 403):
            logger.warning(f"Rejected auth request: {message}")
        else:
            logger.info(f"Auth request: {message}")
        return response
