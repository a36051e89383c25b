"""
Middleware for bearer authentication and request context.

Gates the MCP transport endpoints with the verifier from the startup auth
context and exposes the verified token to tool handlers.
"""

import contextvars
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from mcp.server.auth.provider import AccessToken
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from actual_budget_mcp.errors import InternalError, InvalidTokenError
from actual_budget_mcp.types import AuthContext, AuthMode

logger = logging.getLogger(__name__)


# ========== Request Context ==========


@dataclass
class RequestContext:
    """Per-request context containing the verified access token."""

    access_token: AccessToken


# Context variable for per-request state
_request_context: contextvars.ContextVar[RequestContext | None] = (
    contextvars.ContextVar("request_context", default=None)
)


def get_current_context() -> RequestContext:
    """Get the current request context. Raises if not set."""
    ctx = _request_context.get()
    if ctx is None:
        raise RuntimeError(
            "No request context available. "
            "Authentication is disabled or the request did not pass the bearer gate"
        )
    return ctx


def get_access_token() -> AccessToken | None:
    """Get the verified token for this request, or None when auth is disabled."""
    ctx = _request_context.get()
    return ctx.access_token if ctx is not None else None


# ========== Middleware ==========


class BearerAuthMiddleware:
    """
    Middleware that requires `Authorization: Bearer <token>` on protected paths.

    - Mode none: requests pass through untouched
    - Invalid token: 401 with a WWW-Authenticate challenge
    - Unexpected verifier failure: 500, server keeps running

    In oauth mode the challenge carries resource_metadata so clients can find
    the authorization server (RFC 9728).
    """

    PROTECTED_PREFIXES = ("/mcp", "/sse", "/messages")

    def __init__(
        self,
        app: ASGIApp,
        context_provider: Callable[[], Optional[AuthContext]],
        resource_metadata_url: Optional[str] = None,
        protected_prefixes: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the middleware.

        Args:
            app: The ASGI application to wrap
            context_provider: Returns the auth context once startup has built it
            resource_metadata_url: Protected resource metadata URL for oauth challenges
            protected_prefixes: Path prefixes that require a token
        """
        self.app = app
        self.context_provider = context_provider
        self.resource_metadata_url = resource_metadata_url
        self.protected_prefixes = tuple(protected_prefixes or self.PROTECTED_PREFIXES)

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        """Handle incoming HTTP request."""
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        if not self._is_protected(path):
            await self.app(scope, receive, send)
            return

        auth_context = self.context_provider()
        if auth_context is None:
            response = JSONResponse(
                {
                    "error": "not_ready",
                    "message": "Authentication is not initialized",
                },
                status_code=503,
            )
            await response(scope, receive, send)
            return

        if auth_context.verifier is None:
            await self.app(scope, receive, send)
            return

        token = self._extract_token_from_header(scope)
        if token is None:
            response = self._unauthorized(
                auth_context, None, "Missing or malformed Authorization header"
            )
            await response(scope, receive, send)
            return

        try:
            access_token = await self._verify(auth_context, token)
        except InvalidTokenError as e:
            logger.warning(f"Rejected bearer token on {path}: {e}")
            response = self._unauthorized(auth_context, "invalid_token", str(e))
            await response(scope, receive, send)
            return
        except InternalError as e:
            logger.error(f"Error verifying bearer token: {e}", exc_info=True)
            response = JSONResponse(
                {
                    "error": "server_error",
                    "message": "Internal authentication error",
                },
                status_code=500,
            )
            await response(scope, receive, send)
            return

        logger.debug(f"Authenticated request: client={access_token.client_id}, path={path}")

        token_ctx = _request_context.set(RequestContext(access_token=access_token))
        try:
            await self.app(scope, receive, send)
        finally:
            _request_context.reset(token_ctx)

    async def _verify(self, auth_context: AuthContext, token: str) -> AccessToken:
        try:
            return await auth_context.verifier.verify_access_token(token)
        except (InvalidTokenError, InternalError):
            raise
        except Exception as e:
            raise InternalError(f"{e.__class__.__name__}: {e}") from e

    def _is_protected(self, path: str) -> bool:
        return any(
            path == prefix or path.startswith(f"{prefix}/")
            for prefix in self.protected_prefixes
        )

    def _extract_token_from_header(self, scope: Scope) -> str | None:
        """Extract the token from the Authorization header, if it uses the Bearer scheme."""
        headers = dict(scope.get("headers", []))
        auth_header = headers.get(b"authorization", b"").decode("latin-1")

        if not auth_header:
            logger.debug("No Authorization header found in request")
            return None

        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer":
            logger.warning("Authorization header does not use Bearer scheme")
            return None

        token = token.strip()
        if not token:
            logger.warning("Authorization header present but token is empty")
            return None
        return token

    def _challenge(
        self, auth_context: AuthContext, error: Optional[str], description: str
    ) -> str:
        params = []
        if error:
            params.append(f'error="{error}"')
        params.append('error_description="{}"'.format(description.replace('"', "'")))
        if auth_context.mode is AuthMode.OAUTH and self.resource_metadata_url:
            params.append(f'resource_metadata="{self.resource_metadata_url}"')
        return "Bearer " + ", ".join(params)

    def _unauthorized(
        self, auth_context: AuthContext, error: Optional[str], description: str
    ) -> JSONResponse:
        return JSONResponse(
            {
                "error": error or "authentication_required",
                "message": description,
            },
            status_code=401,
            headers={"WWW-Authenticate": self._challenge(auth_context, error, description)},
        )
