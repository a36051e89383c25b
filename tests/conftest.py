"""Shared fixtures: settings without ambient env, RSA keys and a JWKS, mocked provider HTTP."""

import base64
import os
import time

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwt

from actual_budget_mcp.config import Settings, get_settings

ISSUER = "http://auth:8080/realms/mcp"
PUBLIC_ISSUER = "https://auth.example.com/realms/mcp"


@pytest.fixture(autouse=True)
def clean_auth_env(monkeypatch):
    """Clear server auth environment variables so tests see only what they set."""
    for var in list(os.environ):
        if var.startswith("MCP_") or var == "BEARER_TOKEN":
            monkeypatch.delenv(var, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_settings():
    """Build Settings from keyword arguments, ignoring any .env file."""

    def factory(**values) -> Settings:
        values.setdefault("mcp_oauth_discovery_retry_delay_ms", 0)
        return Settings(_env_file=None, **values)

    return factory


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, byteorder="big")
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def _rsa_private_pem(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _public_jwk(private_key, kid: str) -> dict:
    numbers = private_key.public_key().public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "use": "sig",
        "alg": "RS256",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


@pytest.fixture(scope="session")
def rsa_private_key():
    """Generate RSA key pair for testing."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    """A second key, for signatures the JWKS cannot verify."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks_data(rsa_private_key):
    return {"keys": [_public_jwk(rsa_private_key, "test-key-1")]}


@pytest.fixture
def make_jwk():
    return _public_jwk


@pytest.fixture
def make_token(rsa_private_key):
    """Sign a JWT; claims default to a valid token from ISSUER."""

    def factory(private_key=None, kid="test-key-1", **claims) -> str:
        payload = {
            "sub": "user123",
            "iss": ISSUER,
            "aud": "actual-budget-mcp",
            "exp": int(time.time()) + 3600,
            "iat": int(time.time()),
        }
        payload.update(claims)
        payload = {key: value for key, value in payload.items() if value is not None}
        return jwt.encode(
            payload,
            _rsa_private_pem(private_key or rsa_private_key),
            algorithm="RS256",
            headers={"kid": kid},
        )

    return factory


class ProviderStub:
    """
    Routes requests by URL to canned responses and records every request.

    A route value is either an httpx.Response, a dict (served as JSON 200),
    or a callable taking the request.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url).split("?")[0]
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route
        return httpx.Response(200, json=route)

    def urls(self) -> list[str]:
        return [str(request.url) for request in self.requests]

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def provider():
    return ProviderStub()
