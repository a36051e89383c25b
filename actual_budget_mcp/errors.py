# actual_budget_mcp/errors.py
"""
Error taxonomy for authentication.

Startup errors (ConfigError, DiscoveryError) are fatal and must stop the
server before it listens. Per-request errors (InvalidTokenError,
InternalError) are turned into 401/500 responses by the middleware.
"""


class AuthError(Exception):
    """Base authentication error."""


class ConfigError(AuthError):
    """A setting required by the selected auth mode is missing or unusable."""


class DiscoveryError(AuthError):
    """Every OAuth metadata candidate URL failed in every retry round."""

    def __init__(self, message: str, attempts: list[tuple[str, str]] | None = None):
        super().__init__(message)
        self.attempts = list(attempts or [])


class InvalidTokenError(AuthError):
    """The presented bearer token was rejected."""


class InternalError(AuthError):
    """Unexpected failure while verifying a token."""
