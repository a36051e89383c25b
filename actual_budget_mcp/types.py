from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

import httpx
from pydantic import BaseModel

if TYPE_CHECKING:
    from actual_budget_mcp.auth import BaseTokenVerifier


class AuthMode(str, Enum):
    """Authentication mode active for the life of the process."""

    NONE = "none"
    BEARER = "bearer"
    OAUTH = "oauth"


class ValidationMethod(str, Enum):
    """How OAuth bearer tokens are verified. AUTO is resolved once at startup."""

    AUTO = "auto"
    INTROSPECTION = "introspection"
    JWT = "jwt"
    USERINFO = "userinfo"


class DiscoveredMetadata(BaseModel, extra="allow"):
    """OAuth/OIDC discovery document. Provider-specific fields are kept as extras."""

    issuer: Optional[str] = None
    authorization_endpoint: Optional[str] = None
    token_endpoint: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    userinfo_endpoint: Optional[str] = None
    revocation_endpoint: Optional[str] = None
    end_session_endpoint: Optional[str] = None
    registration_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


@dataclass(frozen=True)
class AuthContext:
    """Auth state built once at startup and shared read-only by every request.

    ``metadata`` is the client-facing (possibly issuer-rewritten) discovery
    document and is only set in oauth mode.
    """

    mode: AuthMode
    verifier: Optional[BaseTokenVerifier] = None
    metadata: Optional[DiscoveredMetadata] = None
    validation_method: Optional[ValidationMethod] = None
    http_client: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()
