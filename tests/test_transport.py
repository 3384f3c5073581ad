"""
Tests for the httpx transport (request shape, status mapping, pooling).
"""

import json

import httpx
import pytest

from vertector_harperdb.config import HarperDBConfig, PoolConfig
from vertector_harperdb.errors import PermanentTransportError, TransientTransportError
from vertector_harperdb.transport import HttpTransport, Transport


def _transport(config, handler):
    client = httpx.AsyncClient(
        base_url=config.url,
        auth=httpx.BasicAuth(config.username, config.password),
        transport=httpx.MockTransport(handler),
    )
    return HttpTransport(config, client=client), client


@pytest.fixture
def http_config():
    return HarperDBConfig(
        url="http://harper.local:9925",
        username="HDB_ADMIN",
        password="password",
    )


@pytest.mark.unit
class TestHttpTransport:
    """Test request sending and failure classification."""

    @pytest.mark.asyncio
    async def test_posts_json_body(self, http_config):
        """Test that the body is sent as JSON to the operations endpoint."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=[{"id": 1}])

        transport, client = _transport(http_config, handler)
        response = await transport.send("POST", http_config.endpoint, {"operation": "sql", "sql": "SELECT 1"}, 5.0)
        await client.aclose()

        assert response.status == 200
        assert response.body == [{"id": 1}]
        assert seen["method"] == "POST"
        assert seen["path"] == "/"
        assert seen["body"] == {"operation": "sql", "sql": "SELECT 1"}
        assert seen["auth"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, http_config):
        """Test that a 5xx becomes TransientTransportError carrying the server message."""
        transport, client = _transport(
            http_config, lambda request: httpx.Response(503, json={"error": "overloaded"})
        )
        with pytest.raises(TransientTransportError) as exc_info:
            await transport.send("POST", "/", {"operation": "describe_all"}, 5.0)
        await client.aclose()

        assert exc_info.value.status == 503
        assert exc_info.value.server_message == "overloaded"

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self, http_config):
        """Test that a 4xx becomes PermanentTransportError."""
        transport, client = _transport(
            http_config, lambda request: httpx.Response(400, json={"error": "Table 'dog' not found"})
        )
        with pytest.raises(PermanentTransportError) as exc_info:
            await transport.send("POST", "/", {"operation": "describe_table"}, 5.0)
        await client.aclose()

        assert exc_info.value.status == 400
        assert exc_info.value.message == "Table 'dog' not found"

    @pytest.mark.asyncio
    async def test_error_without_body_uses_status_message(self, http_config):
        """Test the fallback message when the error body is empty."""
        transport, client = _transport(http_config, lambda request: httpx.Response(404))
        with pytest.raises(PermanentTransportError) as exc_info:
            await transport.send("POST", "/", {}, 5.0)
        await client.aclose()

        assert exc_info.value.message == "Request failed with status code 404"

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self, http_config):
        """Test that a timeout is classified with the ECONNABORTED code."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        transport, client = _transport(http_config, handler)
        with pytest.raises(TransientTransportError) as exc_info:
            await transport.send("POST", "/", {}, 0.1)
        await client.aclose()

        assert exc_info.value.code == "ECONNABORTED"

    @pytest.mark.asyncio
    async def test_connection_error_is_permanent(self, http_config):
        """Test that connection failures are not retried."""
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        transport, client = _transport(http_config, handler)
        with pytest.raises(PermanentTransportError) as exc_info:
            await transport.send("POST", "/", {}, 5.0)
        await client.aclose()

        assert exc_info.value.code == "ConnectError"

    @pytest.mark.asyncio
    async def test_injected_client_not_closed(self, http_config):
        """Test that aclose() leaves an injected client open."""
        transport, client = _transport(http_config, lambda request: httpx.Response(200, json=[]))
        await transport.aclose()
        assert client.is_closed is False
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, http_config):
        """Test that aclose() closes a client the transport created."""
        transport = HttpTransport(http_config)
        await transport.aclose()
        assert transport.client.is_closed is True

    def test_satisfies_protocol(self, http_config):
        """Test that HttpTransport matches the Transport protocol."""
        assert isinstance(HttpTransport(http_config), Transport)


@pytest.mark.unit
class TestConnectionLimits:
    """Test pool configuration mapping."""

    def test_keep_alive_limits(self):
        """Test that keep-alive settings map onto httpx limits."""
        config = HarperDBConfig(
            url="http://h:9925", username="u", password="p",
            pool=PoolConfig(max_connections=20, max_keepalive_connections=5, keep_alive_expiry=2.0),
        )
        limits = HttpTransport.build_limits(config)
        assert limits.max_connections == 20
        assert limits.max_keepalive_connections == 5
        assert limits.keepalive_expiry == 2.0

    def test_keep_alive_disabled(self):
        """Test that disabling keep-alive keeps no idle connections."""
        config = HarperDBConfig(
            url="http://h:9925", username="u", password="p",
            pool=PoolConfig(keep_alive=False),
        )
        assert HttpTransport.build_limits(config).max_keepalive_connections == 0
