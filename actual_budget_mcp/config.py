# actual_budget_mcp/config.py
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings

VALIDATION_METHODS = ("auto", "introspection", "jwt", "userinfo")


class Settings(BaseSettings):
    # Auth mode (CLI flags take precedence)
    mcp_auth_mode: str = "none"

    # MCP Server
    mcp_port: int = 3000
    mcp_public_url: Optional[str] = None

    # Bearer mode
    mcp_bearer_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("MCP_BEARER_TOKEN", "BEARER_TOKEN"),
    )

    # OAuth issuer (internal/public split for docker-style deployments)
    mcp_oauth_issuer_url: Optional[str] = None
    mcp_oauth_internal_issuer_url: Optional[str] = None
    mcp_oauth_public_issuer_url: Optional[str] = None

    # OAuth client credentials (enable introspection)
    mcp_oauth_client_id: Optional[str] = None
    mcp_oauth_client_secret: Optional[str] = None

    # Endpoint overrides and token expectations
    mcp_oauth_introspection_url: Optional[str] = None
    mcp_oauth_jwks_url: Optional[str] = None
    mcp_oauth_expected_issuer: Optional[str] = None
    mcp_oauth_audience: Optional[str] = None
    mcp_oauth_validation_method: str = "auto"

    # Discovery and verification HTTP behaviour
    mcp_oauth_discovery_retries: int = 30
    mcp_oauth_discovery_retry_delay_ms: int = 2000
    mcp_oauth_http_timeout_seconds: float = 10.0
    mcp_oauth_jwks_cache_ttl_seconds: int = 3600

    class Config:
        env_file = ".env"
        env_ignore_empty = True
        extra = "ignore"
        frozen = True
        populate_by_name = True

    @field_validator("mcp_auth_mode", mode="before")
    @classmethod
    def _lower_auth_mode(cls, value):
        return str(value).strip().lower() if value is not None else "none"

    @field_validator("mcp_oauth_validation_method", mode="before")
    @classmethod
    def _normalize_validation_method(cls, value):
        normalized = str(value or "auto").strip().lower()
        return normalized if normalized in VALIDATION_METHODS else "auto"

    @field_validator("mcp_oauth_discovery_retries")
    @classmethod
    def _at_least_one_round(cls, value):
        if value < 1:
            raise ValueError("MCP_OAUTH_DISCOVERY_RETRIES must be at least 1")
        return value

    @property
    def public_url(self) -> str:
        return self.mcp_public_url or f"http://localhost:{self.mcp_port}/mcp"

    @property
    def internal_issuer_url(self) -> Optional[str]:
        return self.mcp_oauth_internal_issuer_url or self.mcp_oauth_issuer_url

    @property
    def public_issuer_url(self) -> Optional[str]:
        return self.mcp_oauth_public_issuer_url or self.mcp_oauth_issuer_url

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.mcp_oauth_client_id and self.mcp_oauth_client_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()
