# actual_budget_mcp/client_factory.py
"""
Factory for the HTTP client used to talk to the OAuth provider.

One client is shared by metadata discovery and the token verifiers of an
auth context, so every outbound call gets the same bounded timeout and
follows redirects (http -> https, trailing-slash canonicalisation).
"""

from typing import Optional

import httpx

from actual_budget_mcp.config import Settings, get_settings


def create_http_client(
    settings: Settings | None = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create an AsyncClient configured for provider calls.

    Args:
        settings: Settings to read the timeout from (defaults to process settings)
        transport: Alternative transport (defaults to the network)

    Returns:
        Configured httpx.AsyncClient; the caller owns it and must close it
    """
    settings = settings or get_settings()
    timeout = httpx.Timeout(settings.mcp_oauth_http_timeout_seconds)

    return httpx.AsyncClient(
        timeout=timeout,
        headers={"Accept": "application/json"},
        follow_redirects=True,
        transport=transport,
    )
