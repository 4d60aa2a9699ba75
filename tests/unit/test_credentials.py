"""Unit tests for the credential client.

Runs the client against an in-process aiohttp token endpoint.
"""

from collections.abc import AsyncGenerator
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from realtime_coach.config import TokenEndpointConfig
from realtime_coach.credentials import Credential, CredentialClient, parse_credential
from realtime_coach.errors import CredentialUnavailable


def token_app(status: int = 200, body: Any = None, raw: str | None = None) -> web.Application:
    """Create a token endpoint returning a fixed response."""
    requests: list[web.Request] = []

    async def handle_token(request: web.Request) -> web.Response:
        requests.append(request)
        if raw is not None:
            return web.Response(status=status, text=raw, content_type="application/json")
        return web.json_response(body, status=status)

    app = web.Application()
    app.router.add_get("/token", handle_token)
    app["requests"] = requests
    return app


@pytest.fixture
async def server_factory() -> AsyncGenerator[Any, None]:
    servers: list[TestServer] = []

    async def start(app: web.Application) -> TestServer:
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield start

    for server in servers:
        await server.close()


def client_for(server: TestServer) -> CredentialClient:
    return CredentialClient(TokenEndpointConfig(url=str(server.make_url("/token")), timeout_s=5))


class TestAcquireCredential:
    """Test acquire_credential against a live endpoint."""

    async def test_success(self, server_factory: Any) -> None:
        """Test the client secret is extracted."""
        app = token_app(body={"client_secret": {"value": "ek_abc123", "expires_at": 1734430000}})
        server = await server_factory(app)

        credential = await client_for(server).acquire_credential()

        assert credential.value == "ek_abc123"
        assert credential.expires_at == 1734430000.0
        assert credential.authorization_header == "Bearer ek_abc123"
        assert len(app["requests"]) == 1

    async def test_http_500(self, server_factory: Any) -> None:
        """Test a server error surfaces as CredentialUnavailable."""
        server = await server_factory(token_app(status=500, body={"error": "boom"}))

        with pytest.raises(CredentialUnavailable, match="HTTP 500"):
            await client_for(server).acquire_credential()

    async def test_missing_secret(self, server_factory: Any) -> None:
        """Test a body without client_secret.value is rejected."""
        server = await server_factory(token_app(body={"client_secret": {}}))

        with pytest.raises(CredentialUnavailable, match="missing client_secret.value"):
            await client_for(server).acquire_credential()

    async def test_invalid_json(self, server_factory: Any) -> None:
        """Test a non-JSON body is rejected."""
        server = await server_factory(token_app(raw="<html>oops</html>"))

        with pytest.raises(CredentialUnavailable, match="Invalid token response"):
            await client_for(server).acquire_credential()

    async def test_unreachable(self, server_factory: Any) -> None:
        """Test connection errors are wrapped."""
        server = await server_factory(token_app(body={}))
        url = str(server.make_url("/token"))
        await server.close()

        client = CredentialClient(TokenEndpointConfig(url=url, timeout_s=2))
        with pytest.raises(CredentialUnavailable, match="Failed to get token"):
            await client.acquire_credential()

    async def test_single_request_per_call(self, server_factory: Any) -> None:
        """Test no retries happen on failure."""
        app = token_app(status=503, body={})
        server = await server_factory(app)

        with pytest.raises(CredentialUnavailable):
            await client_for(server).acquire_credential()

        assert len(app["requests"]) == 1


class TestParseCredential:
    """Test response body parsing."""

    @pytest.mark.parametrize(
        "body",
        [
            None,
            [],
            {},
            {"client_secret": "ek_abc"},
            {"client_secret": {"value": ""}},
            {"client_secret": {"value": 123}},
        ],
    )
    def test_rejects_invalid_bodies(self, body: Any) -> None:
        with pytest.raises(CredentialUnavailable):
            parse_credential(body)

    def test_ignores_invalid_expiry(self) -> None:
        credential = parse_credential({"client_secret": {"value": "ek", "expires_at": True}})
        assert credential.expires_at is None
        assert not credential.is_expired

    def test_expired_credential(self) -> None:
        assert Credential(value="ek", expires_at=1.0).is_expired

    def test_repr_hides_secret(self) -> None:
        assert "ek_secret" not in repr(Credential(value="ek_secret"))
