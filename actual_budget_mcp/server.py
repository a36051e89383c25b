# actual_budget_mcp/server.py
import logging
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx
from fastmcp import FastMCP
from starlette.applications import Starlette
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import ASGIApp

from actual_budget_mcp.config import Settings, get_settings
from actual_budget_mcp.context import build_auth_context
from actual_budget_mcp.middleware import BearerAuthMiddleware
from actual_budget_mcp.types import AuthContext

logger = logging.getLogger(__name__)

VERSION = "1.0.0"
RESOURCE_NAME = "Actual Budget MCP Server"
SCOPES_SUPPORTED = ["mcp:tools"]
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"

# Tools, resources and prompts register themselves on this instance
mcp = FastMCP(
    name="Actual Budget",
    version=VERSION,
    instructions="""Access to an Actual Budget instance: accounts, transactions, categories and
spending. Requests must carry a bearer token unless the server runs without authentication.""",
)


def protected_resource_metadata_url(public_url: str) -> str:
    """RFC 9728 metadata URL for a resource: the well-known path is inserted before the resource path."""
    parts = urlsplit(public_url)
    path = parts.path if parts.path not in ("", "/") else ""
    return urlunsplit(
        (parts.scheme, parts.netloc, f"{PROTECTED_RESOURCE_PATH}{path}", "", "")
    )


def _auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.app.state, "auth_context", None)


def _oauth_not_configured() -> JSONResponse:
    return JSONResponse(
        {"error": "OAuth metadata not configured for this server"}, status_code=404
    )


# ========== OAuth metadata routes ==========


async def protected_resource_metadata(request: Request):
    """Protected Resource Metadata (RFC 9728): where clients obtain tokens for this server."""
    auth_context = _auth_context(request)
    if auth_context is None or auth_context.metadata is None:
        return _oauth_not_configured()

    settings: Settings = request.app.state.settings
    return JSONResponse(
        {
            "resource": settings.public_url,
            "authorization_servers": [auth_context.metadata.issuer],
            "scopes_supported": SCOPES_SUPPORTED,
            "bearer_methods_supported": ["header"],
            "resource_name": RESOURCE_NAME,
        }
    )


async def authorization_server_metadata(request: Request):
    """Authorization server metadata as clients should see it (public issuer)."""
    auth_context = _auth_context(request)
    if auth_context is None or auth_context.metadata is None:
        return _oauth_not_configured()
    return JSONResponse(auth_context.metadata.to_dict())


# ========== Health routes ==========


# Liveness probe: Check if application is alive (doesn't hang)
async def liveness(request: Request):
    """
    Kubernetes liveness probe endpoint.
    Returns 200 if the application process is running.
    """
    return JSONResponse({"status": "alive", "version": VERSION})


# Readiness probe: Check if application can serve traffic
async def readiness(request: Request):
    """
    Kubernetes readiness probe endpoint.
    Returns 200 once the auth context has been built.
    """
    auth_context = _auth_context(request)
    if auth_context is None:
        return JSONResponse(
            {"status": "not_ready", "reason": "Authentication not initialized"},
            status_code=503,
        )

    body = {
        "status": "ready",
        "version": VERSION,
        "auth_mode": auth_context.mode.value,
    }
    if auth_context.validation_method is not None:
        body["validation_method"] = auth_context.validation_method.value
    return JSONResponse(body)


# Legacy health endpoint (kept for backward compatibility)
async def health(request: Request):
    """Legacy health check - redirects to readiness probe logic"""
    return await readiness(request)


# ========== Starlette App ==========


def create_app(
    settings: Optional[Settings] = None,
    enable_oauth: bool = False,
    enable_bearer: bool = False,
    server: Optional[FastMCP] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ASGIApp:
    """
    Build the ASGI app.

    The auth context is built in the lifespan, before the server accepts
    requests. If that fails (missing settings, discovery exhausted) startup
    fails and nothing is served.
    """
    settings = settings or get_settings()
    server = server or mcp
    mcp_app = server.http_app()

    @asynccontextmanager
    async def lifespan(app: Starlette):
        auth_context = await build_auth_context(
            settings,
            enable_oauth=enable_oauth,
            enable_bearer=enable_bearer,
            http_client=http_client,
        )
        app.state.auth_context = auth_context
        logger.info(f"Authentication mode: {auth_context.mode.value}")
        try:
            async with mcp_app.lifespan(app):
                yield
        finally:
            app.state.auth_context = None
            await auth_context.aclose()

    # Protected MCP endpoints sit behind the bearer gate
    wrapped_mcp_app = BearerAuthMiddleware(
        mcp_app,
        context_provider=lambda: getattr(base_app.state, "auth_context", None),
        resource_metadata_url=protected_resource_metadata_url(settings.public_url),
    )

    resource_path = urlsplit(settings.public_url).path.rstrip("/")
    metadata_routes = [
        Route(PROTECTED_RESOURCE_PATH, protected_resource_metadata),
        Route("/.well-known/oauth-authorization-server", authorization_server_metadata),
    ]
    if resource_path:
        metadata_routes.append(
            Route(f"{PROTECTED_RESOURCE_PATH}{resource_path}", protected_resource_metadata)
        )

    base_app = Starlette(
        routes=[
            Route("/health", health),  # Legacy, uses readiness logic
            Route("/healthz", liveness),  # Kubernetes liveness probe
            Route("/readyz", readiness),  # Kubernetes readiness probe
            Route("/ready", readiness),  # Alternative readiness endpoint
            *metadata_routes,
            Mount("/", app=wrapped_mcp_app),
        ],
        lifespan=lifespan,
    )
    base_app.state.settings = settings
    base_app.state.auth_context = None

    # Wrap with CORS middleware
    return CORSMiddleware(
        base_app,
        allow_origins=["*"],  # Configure appropriately for production
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*", "Authorization", "Mcp-Session-Id"],
        expose_headers=["Mcp-Session-Id", "WWW-Authenticate"],
    )


# Run with: uvicorn actual_budget_mcp.server:app --host 0.0.0.0 --port 3000
# (auth mode from MCP_AUTH_MODE; use `python -m actual_budget_mcp` for CLI flags)
app = create_app()
