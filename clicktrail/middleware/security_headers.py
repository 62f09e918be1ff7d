"""Security headers middleware — defense-in-depth for production."""
from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses.

    Tracking responses (redirects, bridge pages, pixels) must never be cached
    by browsers or CDNs, otherwise repeat clicks bypass the server entirely.
    """

    _NO_CACHE_PREFIXES = ("/api/",)

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"

        # Bridge pages are never meant to be framed
        response.headers["X-Frame-Options"] = "DENY"

        # Affiliate networks attribute on the referrer origin, so keep it cross-origin
        response.headers.setdefault("Referrer-Policy", "no-referrer-when-downgrade")

        response.headers["Permissions-Policy"] = (
            "camera=(), microphone=(), geolocation=(), payment=()"
        )

        path = request.url.path
        if any(path.startswith(p) for p in self._NO_CACHE_PREFIXES):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
            response.headers["Pragma"] = "no-cache"

        return response
