# actual_budget_mcp/context.py
"""
Builds the authentication context at startup.

Mode resolution -> (oauth) metadata discovery -> issuer rewrite ->
validation method resolution -> verifier construction. Any failure here is
fatal: the server must not serve protected routes without a verifier.
"""

import logging
from typing import Optional
from urllib.parse import urlsplit

import httpx

from actual_budget_mcp.auth import (
    BaseTokenVerifier,
    IntrospectionTokenVerifier,
    JWTTokenVerifier,
    RemoteKeySet,
    StaticBearerVerifier,
    UserinfoTokenVerifier,
)
from actual_budget_mcp.client_factory import create_http_client
from actual_budget_mcp.config import Settings, get_settings
from actual_budget_mcp.discovery import (
    discover_metadata,
    ensure_trailing_slash,
    rewrite_metadata_issuer,
)
from actual_budget_mcp.errors import ConfigError
from actual_budget_mcp.types import (
    AuthContext,
    AuthMode,
    DiscoveredMetadata,
    ValidationMethod,
)

logger = logging.getLogger(__name__)


def resolve_auth_mode(
    enable_oauth: bool = False,
    enable_bearer: bool = False,
    fallback: Optional[str] = None,
    log: Optional[logging.Logger] = None,
) -> AuthMode:
    """
    Pick the auth mode. CLI flags win over the MCP_AUTH_MODE fallback and
    oauth wins over bearer. Unknown fallback values resolve to none.
    """
    if enable_oauth:
        return AuthMode.OAUTH
    if enable_bearer:
        return AuthMode.BEARER

    try:
        return AuthMode((fallback or AuthMode.NONE.value).strip().lower())
    except ValueError:
        (log or logger).warning(f"Unknown auth mode: {fallback}, defaulting to none")
        return AuthMode.NONE


def resolve_validation_method(
    preferred: ValidationMethod,
    has_credentials: bool,
    introspection_endpoint: Optional[str] = None,
    jwks_uri: Optional[str] = None,
    userinfo_endpoint: Optional[str] = None,
) -> ValidationMethod:
    """
    Decide how tokens will be verified. Pure and deterministic.

    Auto prefers introspection (credentials and endpoint both present), then
    local JWKS verification, then userinfo probing.

    Raises:
        ConfigError: If the preferred method lacks what it needs, or auto finds nothing usable
    """
    if preferred is ValidationMethod.INTROSPECTION:
        missing = []
        if not has_credentials:
            missing.append("MCP_OAUTH_CLIENT_ID and MCP_OAUTH_CLIENT_SECRET")
        if not introspection_endpoint:
            missing.append(
                "an introspection endpoint (OAuth metadata introspection_endpoint "
                "or MCP_OAUTH_INTROSPECTION_URL)"
            )
        if missing:
            raise ConfigError(
                "MCP_OAUTH_VALIDATION_METHOD=introspection requires "
                + " and ".join(missing)
                + "."
            )
        return ValidationMethod.INTROSPECTION

    if preferred is ValidationMethod.JWT:
        if not jwks_uri:
            raise ConfigError(
                "MCP_OAUTH_VALIDATION_METHOD=jwt requires a JWKS URI. OAuth metadata "
                "is missing jwks_uri. Set MCP_OAUTH_JWKS_URL to override."
            )
        return ValidationMethod.JWT

    if preferred is ValidationMethod.USERINFO:
        if not userinfo_endpoint:
            raise ConfigError(
                "MCP_OAUTH_VALIDATION_METHOD=userinfo requires OAuth metadata with a "
                "userinfo_endpoint."
            )
        return ValidationMethod.USERINFO

    if has_credentials and introspection_endpoint:
        return ValidationMethod.INTROSPECTION
    if jwks_uri:
        return ValidationMethod.JWT
    if userinfo_endpoint:
        return ValidationMethod.USERINFO

    if has_credentials:
        raise ConfigError(
            "OAuth client credentials are configured but OAuth metadata is missing an "
            "introspection_endpoint. Set MCP_OAUTH_INTROSPECTION_URL to override."
        )
    raise ConfigError(
        "No token validation method available: MCP_OAUTH_CLIENT_ID and "
        "MCP_OAUTH_CLIENT_SECRET are not set, and OAuth metadata has neither a "
        "jwks_uri nor a userinfo_endpoint. Set MCP_OAUTH_JWKS_URL or configure "
        "client credentials."
    )


def _build_bearer_context(settings: Settings, log: logging.Logger) -> AuthContext:
    token = settings.mcp_bearer_token
    if not token or not token.strip():
        raise ConfigError(
            "MCP_BEARER_TOKEN (or BEARER_TOKEN) is required when auth mode is bearer."
        )
    log.info("MCP authentication enabled (auth mode: bearer)")
    return AuthContext(mode=AuthMode.BEARER, verifier=StaticBearerVerifier(token))


def _require_http_url(name: str, value: str) -> str:
    try:
        parts = urlsplit(value)
    except ValueError as e:
        raise ConfigError(f"{name} is not a valid URL: {value} ({e})") from e
    if parts.scheme not in ("http", "https") or not parts.netloc:
        raise ConfigError(f"{name} must be an absolute http(s) URL, got: {value}")
    return value


def _public_issuer_override(settings: Settings, internal_issuer: str) -> Optional[str]:
    public_issuer = settings.public_issuer_url
    if not public_issuer:
        return None
    if ensure_trailing_slash(public_issuer) == ensure_trailing_slash(internal_issuer):
        return None
    return public_issuer


def _create_oauth_verifier(
    method: ValidationMethod,
    settings: Settings,
    discovered: DiscoveredMetadata,
    internal_issuer: str,
    introspection_endpoint: Optional[str],
    jwks_uri: Optional[str],
    http_client: httpx.AsyncClient,
    log: logging.Logger,
) -> BaseTokenVerifier:
    if method is ValidationMethod.INTROSPECTION:
        log.info(f"OAuth token introspection endpoint: {introspection_endpoint}")
        return IntrospectionTokenVerifier(
            introspection_endpoint=introspection_endpoint,
            client_id=settings.mcp_oauth_client_id,
            client_secret=settings.mcp_oauth_client_secret,
            resource=settings.public_url,
            http_client=http_client,
            audience=settings.mcp_oauth_audience,
            log=log,
        )

    if method is ValidationMethod.JWT:
        expected_issuer = (
            settings.mcp_oauth_expected_issuer or discovered.issuer or internal_issuer
        )
        log.info(f"OAuth JWT validation: jwks_uri={jwks_uri}, issuer={expected_issuer}")
        key_set = RemoteKeySet(
            jwks_uri,
            http_client,
            cache_ttl=settings.mcp_oauth_jwks_cache_ttl_seconds,
        )
        return JWTTokenVerifier(
            key_set,
            issuer=expected_issuer,
            audience=settings.mcp_oauth_audience,
            log=log,
        )

    log.info(f"OAuth userinfo validation: {discovered.userinfo_endpoint}")
    return UserinfoTokenVerifier(discovered.userinfo_endpoint, http_client, log=log)


async def _build_oauth_context(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient],
    log: logging.Logger,
) -> AuthContext:
    internal_issuer = settings.internal_issuer_url
    if not internal_issuer:
        raise ConfigError(
            "MCP_OAUTH_INTERNAL_ISSUER_URL (or MCP_OAUTH_ISSUER_URL) is required "
            "when auth mode is oauth."
        )
    _require_http_url("MCP_OAUTH_INTERNAL_ISSUER_URL", internal_issuer)

    if bool(settings.mcp_oauth_client_id) != bool(settings.mcp_oauth_client_secret):
        log.warning(
            "Only one of MCP_OAUTH_CLIENT_ID / MCP_OAUTH_CLIENT_SECRET is set; "
            "client credentials are ignored"
        )

    owns_client = http_client is None
    client = http_client or create_http_client(settings)

    try:
        discovered = await discover_metadata(
            internal_issuer,
            client,
            retries=settings.mcp_oauth_discovery_retries,
            retry_delay_ms=settings.mcp_oauth_discovery_retry_delay_ms,
            log=log,
        )
        metadata = rewrite_metadata_issuer(
            discovered, _public_issuer_override(settings, internal_issuer), log=log
        )

        # The server itself talks to the provider over the internal network
        introspection_endpoint = (
            settings.mcp_oauth_introspection_url or discovered.introspection_endpoint
        )
        jwks_uri = settings.mcp_oauth_jwks_url or discovered.jwks_uri

        method = resolve_validation_method(
            ValidationMethod(settings.mcp_oauth_validation_method),
            has_credentials=settings.has_client_credentials,
            introspection_endpoint=introspection_endpoint,
            jwks_uri=jwks_uri,
            userinfo_endpoint=discovered.userinfo_endpoint,
        )
        verifier = _create_oauth_verifier(
            method,
            settings,
            discovered,
            internal_issuer,
            introspection_endpoint,
            jwks_uri,
            client,
            log,
        )
    except Exception:
        if owns_client:
            await client.aclose()
        raise

    log.info(
        f"MCP authentication enabled (auth mode: oauth, validation: {method.value}, "
        f"issuer: {metadata.issuer})"
    )
    return AuthContext(
        mode=AuthMode.OAUTH,
        verifier=verifier,
        metadata=metadata,
        validation_method=method,
        http_client=client if owns_client else None,
    )


async def build_auth_context(
    settings: Optional[Settings] = None,
    enable_oauth: bool = False,
    enable_bearer: bool = False,
    http_client: Optional[httpx.AsyncClient] = None,
    log: Optional[logging.Logger] = None,
) -> AuthContext:
    """
    Build the authentication context from CLI flags and settings.

    Args:
        settings: Settings snapshot (defaults to process settings)
        enable_oauth: --enable-oauth flag
        enable_bearer: --enable-bearer flag
        http_client: Client for provider calls; created (and owned by the
            context) when omitted
        log: Logger for startup and verification messages

    Returns:
        AuthContext with mode, verifier and, in oauth mode, client-facing metadata

    Raises:
        ConfigError: Required settings are missing for the selected mode
        DiscoveryError: Provider metadata could not be loaded
    """
    settings = settings or get_settings()
    log = log or logger

    mode = resolve_auth_mode(enable_oauth, enable_bearer, settings.mcp_auth_mode, log=log)

    if mode is AuthMode.BEARER:
        return _build_bearer_context(settings, log)
    if mode is AuthMode.OAUTH:
        return await _build_oauth_context(settings, http_client, log)

    log.info("MCP authentication disabled (auth mode: none)")
    return AuthContext(mode=AuthMode.NONE)
