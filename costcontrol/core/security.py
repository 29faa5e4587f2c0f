import logging
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach common security headers to every response."""

    def __init__(
        self,
        app,
        *,
        enable_hsts: bool = True,
        csp: Optional[str] = None,
        no_store: bool = True,
    ) -> None:
        super().__init__(app)
        self.enable_hsts = enable_hsts
        self.csp = csp
        self.no_store = no_store

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        response = await call_next(request)
        headers = response.headers

        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("Referrer-Policy", "same-origin")
        headers.setdefault("Permissions-Policy", "camera=(), microphone=(), geolocation=()")
        # Financial figures must never be served from a shared cache.
        if self.no_store:
            headers.setdefault("Cache-Control", "no-store")
        if self.enable_hsts and request.url.scheme == "https":
            headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
        if self.csp:
            headers.setdefault("Content-Security-Policy", self.csp)

        return response


def log_security_warnings(jwt_secret: str, consistency_mode: str) -> None:
    if jwt_secret == "dev-secret-please-change":
        logger.warning("JWT secret is using the insecure default; set JWT_SECRET in the environment.")
    if consistency_mode == "advisory":
        logger.warning(
            "Commitment consistency mode is 'advisory'; concurrent commitments may overcommit capital. "
            "Set COMMITMENT_CONSISTENCY_MODE to 'optimistic' or 'serialized' to close the gap."
        )
