"""
Security headers for every response

Access codes, API keys and webhook secrets travel in response bodies, so
nothing is cacheable. Only the hosted chat widget may be framed.
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from config import settings

FRAMEABLE_PATH_PREFIXES = ("/chat/widget",)

BASE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=(), payment=(), usb=()",
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app):
        super().__init__(app)
        self.headers = dict(BASE_HEADERS, **{"X-API-Version": settings.APP_VERSION})
        if settings.ENABLE_HSTS and settings.is_production:
            self.headers["Strict-Transport-Security"] = f"max-age={settings.HSTS_MAX_AGE}; includeSubDomains"

    async def dispatch(self, request: Request, call_next) -> Response:
        response: Response = await call_next(request)

        if "server" in response.headers:
            del response.headers["server"]
        response.headers.update(self.headers)
        if not request.url.path.startswith(FRAMEABLE_PATH_PREFIXES):
            response.headers["X-Frame-Options"] = "DENY"
            response.headers["Content-Security-Policy"] = "frame-ancestors 'none'"
        return response
