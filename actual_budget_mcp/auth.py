# actual_budget_mcp/auth.py
"""
Bearer token verifiers.

One strategy is selected at startup and shared by every request:
- StaticBearerVerifier: compares against MCP_BEARER_TOKEN
- JWTTokenVerifier: local signature check against the provider's JWKS
- IntrospectionTokenVerifier: RFC 7662 introspection with client credentials
- UserinfoTokenVerifier: probes the userinfo endpoint with the token

All strategies raise InvalidTokenError with a caller-safe message from
verify_access_token(); details go to the log.
"""

import hmac
import logging
import time
from abc import abstractmethod
from typing import Any, Iterable, Mapping, Optional

import httpx
from jose import JWTError, jwt
from mcp.server.auth.provider import AccessToken, TokenVerifier

from actual_budget_mcp.errors import ConfigError, InvalidTokenError

logger = logging.getLogger(__name__)

LOCAL_USER = "local-user"
UNKNOWN_CLIENT = "unknown-client"
DEFAULT_SCOPES = ("mcp:tools",)

STATIC_TOKEN_LIFETIME = 24 * 60 * 60
USERINFO_TOKEN_LIFETIME = 60 * 60

# Provider naming differs: Keycloak/Okta use client_id/cid, OIDC uses azp
CLIENT_ID_CLAIMS = ("client_id", "azp", "clientId", "cid")
SUBJECT_CLAIMS = ("sub",)
SCOPE_CLAIMS = ("scope", "scp")

# Note: Only asymmetric algorithms supported
SUPPORTED_ALGORITHMS = {
    "RS256",
    "RS384",
    "RS512",
    "ES256",
    "ES384",
    "ES512",
    "PS256",
    "PS384",
    "PS512",
}


# ========== Claim helpers ==========


def first_claim(claims: Mapping[str, Any], names: Iterable[str]) -> Optional[str]:
    """Return the first non-empty string claim among names, in order."""
    for name in names:
        value = claims.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_scopes(
    claims: Mapping[str, Any], names: Iterable[str] = SCOPE_CLAIMS
) -> list[str]:
    """Read scopes from a space-delimited string or a list claim (strings only)."""
    for name in names:
        value = claims.get(name)
        if isinstance(value, str):
            return value.split()
        if isinstance(value, list):
            return [item for item in value if isinstance(item, str)]
    return []


def extract_expiry(claims: Mapping[str, Any]) -> Optional[int]:
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return int(exp)
    return None


def audience_matches(aud: Any, expected: Optional[str]) -> bool:
    """
    Check an aud value (string or list of strings) against the expected audience.

    No expected audience means any audience is accepted.
    """
    if not expected:
        return True
    if isinstance(aud, str):
        return aud == expected
    if isinstance(aud, list):
        return any(isinstance(item, str) and item == expected for item in aud)
    return False


def classify_jwt_error(message: str) -> str:
    """Map a JWT library error message to a stable, caller-safe message."""
    lowered = message.lower()
    if "expired" in lowered:
        return "Token has expired"
    if "audience" in lowered:
        return "Token audience mismatch"
    if "issuer" in lowered:
        return "Token issuer mismatch"
    if "signature" in lowered:
        return "Invalid token signature"
    return "Token validation failed"


# ========== Verifiers ==========


class BaseTokenVerifier(TokenVerifier):
    """Token verifier usable both by our middleware and the MCP SDK."""

    @abstractmethod
    async def verify_access_token(self, token: str) -> AccessToken:
        """Verify token or raise InvalidTokenError."""

    async def verify_token(self, token: str) -> AccessToken | None:
        try:
            return await self.verify_access_token(token)
        except InvalidTokenError as e:
            logger.info(f"Token rejected: {e}")
            return None


class StaticBearerVerifier(BaseTokenVerifier):
    """Accepts exactly one configured token."""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigError("StaticBearerVerifier requires a non-empty token")
        self._secret = secret.encode("utf-8")

    async def verify_access_token(self, token: str) -> AccessToken:
        if not hmac.compare_digest(token.encode("utf-8"), self._secret):
            raise InvalidTokenError("Invalid token")

        return AccessToken(
            token=token,
            client_id=LOCAL_USER,
            scopes=list(DEFAULT_SCOPES),
            expires_at=int(time.time()) + STATIC_TOKEN_LIFETIME,
        )


class RemoteKeySet:
    """
    JWKS fetched lazily from the provider.

    Keys are refetched when the cache TTL lapses or when a token names a kid
    that is not cached (key rotation). A refresh replaces the whole key map,
    so concurrent callers always read a complete set.
    """

    def __init__(
        self,
        jwks_uri: str,
        http_client: httpx.AsyncClient,
        cache_ttl: float = 3600,
        min_refresh_interval: float = 30.0,
    ):
        self.jwks_uri = jwks_uri
        self.cache_ttl = cache_ttl
        self.min_refresh_interval = min_refresh_interval
        self._http_client = http_client
        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at: float = 0.0

    async def _refresh(self) -> dict[str, dict[str, Any]]:
        try:
            response = await self._http_client.get(self.jwks_uri)
            response.raise_for_status()
            document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise InvalidTokenError(f"Failed to fetch JWKS: {e}") from e

        keys: dict[str, dict[str, Any]] = {}
        raw_keys = document.get("keys", []) if isinstance(document, dict) else []
        for key in raw_keys:
            if not isinstance(key, dict) or key.get("use", "sig") != "sig":
                continue
            keys[str(key.get("kid", ""))] = key

        logger.debug(f"Fetched {len(keys)} signing keys from {self.jwks_uri}")
        self._keys = keys
        self._fetched_at = time.monotonic()
        return keys

    @staticmethod
    def _lookup(keys: dict[str, dict[str, Any]], kid: Optional[str]) -> dict | None:
        if kid is None:
            # Tokens without kid are only unambiguous with a single key
            return next(iter(keys.values())) if len(keys) == 1 else None
        return keys.get(kid)

    async def get_signing_key(self, kid: Optional[str]) -> dict[str, Any]:
        keys = self._keys
        if not keys or time.monotonic() - self._fetched_at >= self.cache_ttl:
            keys = await self._refresh()

        key = self._lookup(keys, kid)
        if key is None and time.monotonic() - self._fetched_at >= self.min_refresh_interval:
            keys = await self._refresh()
            key = self._lookup(keys, kid)

        if key is None:
            raise InvalidTokenError("No matching key found in JWKS")
        return key


class JWTTokenVerifier(BaseTokenVerifier):
    """Verifies JWT access tokens locally against the provider's JWKS."""

    def __init__(
        self,
        key_set: RemoteKeySet,
        issuer: str,
        audience: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.key_set = key_set
        self.issuer = issuer
        self.audience = audience or None
        self._log = log or logger

    async def _decode(self, token: str) -> dict[str, Any]:
        header = jwt.get_unverified_header(token)
        algorithm = header.get("alg")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise JWTError(f"Unsupported token algorithm '{algorithm}'")

        key = await self.key_set.get_signing_key(header.get("kid"))
        key_algorithm = key.get("alg")
        if key_algorithm and key_algorithm != algorithm:
            raise JWTError(
                f"Token algorithm '{algorithm}' doesn't match key algorithm '{key_algorithm}'"
            )

        claims = jwt.decode(
            token,
            key,
            algorithms=[algorithm],
            issuer=self.issuer,
            options={
                "verify_aud": False,  # validated below, jose skips tokens without aud
                "verify_at_hash": False,
            },
        )

        if not audience_matches(claims.get("aud"), self.audience):
            raise JWTError(
                f"Invalid audience: got {claims.get('aud')!r}, expected {self.audience}"
            )
        return claims

    async def verify_access_token(self, token: str) -> AccessToken:
        try:
            claims = await self._decode(token)
        except (JWTError, InvalidTokenError) as e:
            self._log.warning(f"JWT validation failed: {e}")
            raise InvalidTokenError(classify_jwt_error(str(e))) from e
        except Exception as e:
            self._log.error(f"Unexpected error validating JWT: {e}", exc_info=True)
            raise InvalidTokenError("Token validation failed") from e

        client_id = (
            first_claim(claims, CLIENT_ID_CLAIMS)
            or first_claim(claims, SUBJECT_CLAIMS)
            or UNKNOWN_CLIENT
        )

        return AccessToken(
            token=token,
            client_id=client_id,
            scopes=extract_scopes(claims),
            expires_at=extract_expiry(claims),
        )


class IntrospectionTokenVerifier(BaseTokenVerifier):
    """Asks the provider whether a token is active (RFC 7662)."""

    def __init__(
        self,
        introspection_endpoint: str,
        client_id: str,
        client_secret: str,
        resource: str,
        http_client: httpx.AsyncClient,
        audience: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.introspection_endpoint = introspection_endpoint
        self.client_id = client_id
        self.resource = resource
        self.audience = audience
        self._auth = httpx.BasicAuth(client_id, client_secret)
        self._http_client = http_client
        self._log = log or logger

    async def verify_access_token(self, token: str) -> AccessToken:
        try:
            response = await self._http_client.post(
                self.introspection_endpoint,
                data={
                    "token": token,
                    "token_type_hint": "access_token",
                    "resource": self.resource,
                },
                auth=self._auth,
            )

            if not response.is_success:
                self._log.error(
                    f"Token introspection HTTP error: {response.status_code} "
                    f"{response.reason_phrase} - {response.text[:200]}"
                )
                raise InvalidTokenError(
                    f"Token introspection failed: HTTP {response.status_code}"
                )

            data = response.json()
            if not isinstance(data, dict):
                raise InvalidTokenError("Token introspection returned an invalid response")

            if data.get("active") is not True:
                self._log.warning("Token introspection returned inactive token")
                raise InvalidTokenError("Token is not active")

            if not audience_matches(data.get("aud"), self.audience):
                self._log.warning(
                    f"Token audience mismatch: got {data.get('aud')!r}, expected {self.audience}"
                )
                raise InvalidTokenError("Token audience does not match MCP_OAUTH_AUDIENCE")

        except InvalidTokenError:
            raise
        except Exception as e:
            self._log.error(f"Token introspection exception: {e}")
            raise InvalidTokenError("Token introspection failed") from e

        client_id = data.get("client_id")
        scope = data.get("scope")

        return AccessToken(
            token=token,
            client_id=client_id if isinstance(client_id, str) and client_id else self.client_id,
            scopes=scope.split() if isinstance(scope, str) else [],
            expires_at=extract_expiry(data),
        )


class UserinfoTokenVerifier(BaseTokenVerifier):
    """
    Treats a successful userinfo call as proof that an opaque token is live.

    Used when there are no introspection credentials and no JWKS. The
    response carries no audience or expiry, so neither is checked and a
    one hour expiry is assumed.
    """

    def __init__(
        self,
        userinfo_endpoint: str,
        http_client: httpx.AsyncClient,
        log: Optional[logging.Logger] = None,
    ):
        self.userinfo_endpoint = userinfo_endpoint
        self._http_client = http_client
        self._log = log or logger

    def _rejection(self, response: httpx.Response) -> InvalidTokenError:
        detail = f"{response.headers.get('www-authenticate', '')} {response.text[:200]}"
        self._log.warning(
            f"Userinfo request failed: HTTP {response.status_code} {detail.strip()}"
        )
        if "invalid_token" in detail:
            return InvalidTokenError("Token rejected by userinfo endpoint: invalid_token")
        if response.status_code == 401 or "unauthorized" in detail.lower():
            return InvalidTokenError("Token rejected by userinfo endpoint: unauthorized")
        return InvalidTokenError("Token validation failed")

    async def verify_access_token(self, token: str) -> AccessToken:
        try:
            response = await self._http_client.get(
                self.userinfo_endpoint,
                headers={"Authorization": f"Bearer {token}"},
            )
            if not response.is_success:
                raise self._rejection(response)

            data = response.json()
            subject = first_claim(data, SUBJECT_CLAIMS) if isinstance(data, dict) else None
            if subject is None:
                raise InvalidTokenError("Userinfo response is missing the sub claim")

        except InvalidTokenError:
            raise
        except Exception as e:
            self._log.error(f"Userinfo request exception: {e}")
            raise InvalidTokenError("Token validation failed") from e

        return AccessToken(
            token=token,
            client_id=subject,
            scopes=[],
            expires_at=int(time.time()) + USERINFO_TOKEN_LIFETIME,
        )
