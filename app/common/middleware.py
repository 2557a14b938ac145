"""
Middleware for caller identity and response hardening
"""
from fastapi import Request, status
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
import logging
import re

logger = logging.getLogger(__name__)

ACTOR_HEADER = "X-User-Id"
_ACTOR_PATTERN = re.compile(r"^[A-Za-z0-9_.@:\-]{1,128}$")


class ActorMiddleware(BaseHTTPMiddleware):
    """
    Middleware that reads the optional X-User-Id header set by the gateway
    and stores it on request.state.actor_id for audit events.
    Authentication happens upstream; this only validates the format.
    """

    async def dispatch(self, request: Request, call_next):
        actor_header = request.headers.get(ACTOR_HEADER)
        request.state.actor_id = None

        if actor_header is not None:
            actor_header = actor_header.strip()
            if not _ACTOR_PATTERN.match(actor_header):
                return Response(
                    content='{"detail":"Invalid X-User-Id header"}',
                    status_code=status.HTTP_400_BAD_REQUEST,
                    media_type="application/json"
                )
            request.state.actor_id = actor_header
            logger.debug(f"Request to {request.url.path} by actor {actor_header}")

        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers; export responses carry presigned
    download URLs and must not be cached
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if request.url.path.startswith("/api/v1/exports"):
            response.headers["Cache-Control"] = "no-store"

        return response
