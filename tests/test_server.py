"""
Tests for the ASGI app: startup ordering, health probes and OAuth metadata routes.
"""

import pytest
from fastmcp import FastMCP
from starlette.testclient import TestClient

from actual_budget_mcp.errors import ConfigError, DiscoveryError
from actual_budget_mcp.server import create_app, protected_resource_metadata_url

from .conftest import ISSUER, PUBLIC_ISSUER, ProviderStub

DISCOVERY_URL = f"{ISSUER}/.well-known/openid-configuration"
METADATA = {
    "issuer": ISSUER,
    "authorization_endpoint": f"{ISSUER}/protocol/openid-connect/auth",
    "token_endpoint": f"{ISSUER}/protocol/openid-connect/token",
    "jwks_uri": f"{ISSUER}/protocol/openid-connect/certs",
}


@pytest.fixture
def server():
    return FastMCP(name="Actual Budget Test")


def test_protected_resource_metadata_url():
    assert (
        protected_resource_metadata_url("https://budget.example.com/mcp")
        == "https://budget.example.com/.well-known/oauth-protected-resource/mcp"
    )
    assert (
        protected_resource_metadata_url("https://budget.example.com/")
        == "https://budget.example.com/.well-known/oauth-protected-resource"
    )


class TestNoAuth:
    def test_health_probes(self, make_settings, server):
        with TestClient(create_app(make_settings(), server=server)) as client:
            assert client.get("/healthz").json()["status"] == "alive"

            ready = client.get("/readyz")
            assert ready.status_code == 200
            assert ready.json()["auth_mode"] == "none"
            assert "validation_method" not in ready.json()

            assert client.get("/health").status_code == 200

    def test_oauth_routes_not_configured(self, make_settings, server):
        with TestClient(create_app(make_settings(), server=server)) as client:
            for path in (
                "/.well-known/oauth-protected-resource",
                "/.well-known/oauth-protected-resource/mcp",
                "/.well-known/oauth-authorization-server",
            ):
                response = client.get(path)
                assert response.status_code == 404
                assert response.json() == {
                    "error": "OAuth metadata not configured for this server"
                }

    def test_not_ready_before_startup(self, make_settings, server):
        # Without entering the client the lifespan never runs
        client = TestClient(
            create_app(make_settings(mcp_auth_mode="bearer", mcp_bearer_token="abc123"), server=server)
        )

        assert client.get("/readyz").status_code == 503
        assert client.get("/healthz").status_code == 200

        response = client.post("/mcp", headers={"Authorization": "Bearer abc123"})
        assert response.status_code == 503


class TestBearer:
    def test_mcp_requires_token(self, make_settings, server):
        settings = make_settings(mcp_auth_mode="bearer", mcp_bearer_token="abc123")

        with TestClient(create_app(settings, server=server)) as client:
            assert client.get("/readyz").json()["auth_mode"] == "bearer"

            response = client.post("/mcp", json={})
            assert response.status_code == 401
            assert "resource_metadata" not in response.headers["WWW-Authenticate"]

            response = client.post("/mcp", json={}, headers={"Authorization": "Bearer wrong"})
            assert response.status_code == 401

            response = client.post(
                "/mcp",
                json={"jsonrpc": "2.0", "id": 1, "method": "ping"},
                headers={
                    "Authorization": "Bearer abc123",
                    "Accept": "application/json, text/event-stream",
                },
            )
            assert response.status_code not in (401, 503)

    def test_cli_flag_overrides_env_mode(self, make_settings, server):
        settings = make_settings(mcp_auth_mode="none", mcp_bearer_token="abc123")

        with TestClient(create_app(settings, enable_bearer=True, server=server)) as client:
            assert client.post("/mcp", json={}).status_code == 401

    @pytest.mark.asyncio
    async def test_startup_fails_without_token(self, make_settings, server):
        app = create_app(make_settings(), enable_bearer=True, server=server)
        base_app = app.app

        with pytest.raises(ConfigError):
            async with base_app.router.lifespan_context(base_app):
                pass

        assert base_app.state.auth_context is None


class TestOAuth:
    @pytest.fixture
    def stub(self):
        return ProviderStub({DISCOVERY_URL: METADATA})

    @pytest.fixture
    def settings(self, make_settings):
        return make_settings(
            mcp_auth_mode="oauth",
            mcp_oauth_internal_issuer_url=ISSUER,
            mcp_oauth_public_issuer_url=PUBLIC_ISSUER,
            mcp_public_url="https://budget.example.com/mcp",
        )

    def test_metadata_routes(self, settings, server, stub):
        app = create_app(settings, server=server, http_client=stub.client())

        with TestClient(app) as client:
            ready = client.get("/readyz").json()
            assert ready["auth_mode"] == "oauth"
            assert ready["validation_method"] == "jwt"

            prm = client.get("/.well-known/oauth-protected-resource/mcp")
            assert prm.status_code == 200
            assert prm.json() == {
                "resource": "https://budget.example.com/mcp",
                "authorization_servers": [f"{PUBLIC_ISSUER}/"],
                "scopes_supported": ["mcp:tools"],
                "bearer_methods_supported": ["header"],
                "resource_name": "Actual Budget MCP Server",
            }
            assert client.get("/.well-known/oauth-protected-resource").json() == prm.json()

            metadata = client.get("/.well-known/oauth-authorization-server").json()
            assert metadata["issuer"] == f"{PUBLIC_ISSUER}/"
            assert metadata["token_endpoint"] == f"{PUBLIC_ISSUER}/protocol/openid-connect/token"

    def test_challenge_points_to_resource_metadata(self, settings, server, stub):
        app = create_app(settings, server=server, http_client=stub.client())

        with TestClient(app) as client:
            response = client.post("/mcp", json={}, headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"
        assert (
            'resource_metadata="https://budget.example.com/.well-known/oauth-protected-resource/mcp"'
            in response.headers["WWW-Authenticate"]
        )

    @pytest.mark.asyncio
    async def test_startup_fails_when_discovery_fails(self, make_settings, server):
        settings = make_settings(
            mcp_auth_mode="oauth",
            mcp_oauth_issuer_url=ISSUER,
            mcp_oauth_discovery_retries=1,
        )
        stub = ProviderStub()
        app = create_app(settings, server=server, http_client=stub.client())
        base_app = app.app

        with pytest.raises(DiscoveryError):
            async with base_app.router.lifespan_context(base_app):
                pass

        assert len(stub.requests) == 4
