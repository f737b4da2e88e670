"""Request-scoped middleware for API requests."""

import logging
from typing import Callable
from uuid import UUID, uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from utils.actor_context import Actor, ActorRole, clear_current_actor, set_current_actor

logger = logging.getLogger(__name__)

ActorResolver = Callable[[Request], Actor | None]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Assigns a unique request ID to every request."""

    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def resolve_actor_from_headers(request: Request) -> Actor | None:
    """
    Read the actor forwarded by the upstream identity service.

    Expects X-Actor-Id (UUID) and X-Actor-Role (admin, advertiser, partner).
    Only safe behind a gateway that strips these headers from client traffic.

    Returns:
        The actor, or None if either header is missing

    Raises:
        ValueError: If a header is present but malformed
    """
    actor_id = request.headers.get("X-Actor-Id")
    role = request.headers.get("X-Actor-Role")
    if not actor_id or not role:
        return None
    return Actor(id=UUID(actor_id), role=ActorRole(role.lower()))


class ActorMiddleware(BaseHTTPMiddleware):
    """Middleware that resolves the acting identity and sets actor context.

    For protected routes:
    1. Resolves the actor through the injected resolver
    2. Sets the actor in request.state and actor context
    3. Clears context after request completes

    Public paths bypass resolution entirely.
    """

    PUBLIC_PATHS = [
        "/health",
        "/docs",
        "/openapi.json",
    ]

    def __init__(self, app, resolve_actor: ActorResolver):
        super().__init__(app)
        self._resolve_actor = resolve_actor

    def _is_public_path(self, path: str) -> bool:
        """Check if path is in public paths list."""
        for public_path in self.PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path):
                return True
        return False

    async def dispatch(self, request: Request, call_next):
        """Process request through middleware."""
        if self._is_public_path(request.url.path):
            return await call_next(request)

        try:
            actor = self._resolve_actor(request)
        except ValueError:
            logger.warning("Rejected malformed actor identity on %s", request.url.path)
            actor = None

        if actor is None:
            return JSONResponse(
                status_code=401,
                content=error_response(
                    ErrorCodes.NOT_AUTHENTICATED,
                    "Actor identity required",
                    getattr(request.state, "request_id", None),
                ).model_dump(mode="json"),
            )

        set_current_actor(actor)
        request.state.actor = actor

        try:
            return await call_next(request)
        finally:
            # Always clear context
            clear_current_actor()
