# actual_budget_mcp/discovery.py
"""
OAuth/OIDC metadata discovery.

Fetches the provider's well-known document from the internal issuer URL,
retrying in rounds while the provider is still starting, and rewrites the
discovered endpoints onto the public issuer when clients reach the provider
through a different host than this server does.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import SplitResult, urljoin, urlsplit, urlunsplit

import httpx

from actual_budget_mcp.errors import DiscoveryError
from actual_budget_mcp.types import DiscoveredMetadata

logger = logging.getLogger(__name__)

WELL_KNOWN_PATHS = (
    ".well-known/openid-configuration",
    ".well-known/oauth-authorization-server",
)


def ensure_trailing_slash(url: str) -> str:
    """Return url with a path ending in '/'."""
    if url.endswith("/"):
        return url
    parts = urlsplit(url)
    path = parts.path if parts.path.endswith("/") else f"{parts.path}/"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


def build_well_known_candidates(issuer: str) -> list[str]:
    """
    Build discovery URLs in the order they are tried.

    Issuer-scoped documents come first (Keycloak realms, Auth0 tenants), then
    the same documents at the origin root (RFC 8414 servers without a path).
    """
    issuer_with_slash = ensure_trailing_slash(issuer)
    scoped = [f"{issuer_with_slash}{path}" for path in WELL_KNOWN_PATHS]
    root = [urljoin(issuer, f"/{path}") for path in WELL_KNOWN_PATHS]
    return scoped + root


async def discover_metadata(
    issuer: str,
    http_client: httpx.AsyncClient,
    retries: int,
    retry_delay_ms: int,
    log: Optional[logging.Logger] = None,
) -> DiscoveredMetadata:
    """
    Fetch the provider metadata document.

    Every candidate is tried in order in each round; the first 2xx JSON object
    wins. Between rounds the loop waits retry_delay_ms. Requests are issued one
    at a time.

    Args:
        issuer: Issuer URL the server can reach (internal issuer)
        http_client: Client used for the requests
        retries: Number of rounds (at least one round is always made)
        retry_delay_ms: Delay between rounds in milliseconds

    Returns:
        The parsed discovery document

    Raises:
        DiscoveryError: If every candidate failed in every round
    """
    log = log or logger
    candidates = build_well_known_candidates(issuer)
    rounds = max(retries, 1)
    attempts: list[tuple[str, str]] = []

    for attempt in range(1, rounds + 1):
        for candidate in candidates:
            try:
                response = await http_client.get(candidate)
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                reason = str(e) or e.__class__.__name__
                log.error(f"OAuth metadata fetch error: {candidate} ({reason})")
                attempts.append((candidate, reason))
                continue

            if not response.is_success:
                log.error(
                    f"OAuth metadata fetch failed: {candidate} "
                    f"(HTTP {response.status_code} {response.reason_phrase})"
                )
                attempts.append((candidate, f"HTTP {response.status_code}"))
                continue

            try:
                document = response.json()
                if not isinstance(document, dict):
                    raise ValueError("metadata is not a JSON object")
                metadata = DiscoveredMetadata.model_validate(document)
            except ValueError as e:
                log.error(f"OAuth metadata parse error: {candidate} ({e})")
                attempts.append((candidate, f"invalid metadata: {e}"))
                continue

            log.info(f"Loaded OAuth metadata from {candidate}")
            return metadata

        if attempt < rounds:
            log.warning(
                f"OAuth metadata discovery retry {attempt}/{rounds}, issuer: {issuer}"
            )
            await asyncio.sleep(retry_delay_ms / 1000)

    tried = "; ".join(f"{url} ({reason})" for url, reason in attempts)
    raise DiscoveryError(
        f"Unable to load OAuth metadata from issuer {issuer}. Tried: {tried}",
        attempts,
    )


def _split_absolute(url: str) -> SplitResult:
    parts = urlsplit(url)
    # Accessing .port validates it
    parts.port
    if not parts.scheme or not parts.netloc:
        raise ValueError(f"not an absolute URL: {url!r}")
    return parts


def _is_endpoint_field(name: str) -> bool:
    return name.endswith("_endpoint") or name == "jwks_uri"


def rewrite_metadata_issuer(
    metadata: DiscoveredMetadata,
    public_issuer: Optional[str],
    log: Optional[logging.Logger] = None,
) -> DiscoveredMetadata:
    """
    Move endpoint URLs from the internal issuer onto the public issuer.

    Only scheme and authority change; path, query and fragment are kept
    exactly. A field that cannot be parsed keeps its discovered value.
    Never raises.
    """
    if not public_issuer:
        return metadata

    log = log or logger

    try:
        issuer_url = ensure_trailing_slash(public_issuer)
        public = _split_absolute(issuer_url)
    except ValueError as e:
        log.error(
            f"Failed to rewrite OAuth metadata issuer, using discovered metadata: {e}"
        )
        return metadata

    discovered = metadata.model_dump(exclude_none=True)
    rewritten = dict(discovered)

    for name, value in discovered.items():
        if not _is_endpoint_field(name) or not isinstance(value, str) or not value:
            continue
        try:
            original = _split_absolute(value)
        except ValueError as e:
            log.warning(f"Keeping discovered {name}, cannot rewrite it: {e}")
            continue
        rewritten[name] = urlunsplit(
            (public.scheme, public.netloc, original.path, original.query, original.fragment)
        )

    rewritten["issuer"] = issuer_url
    log.info(f"Rewrote OAuth metadata issuer {metadata.issuer} -> {issuer_url}")
    return DiscoveredMetadata.model_validate(rewritten)
