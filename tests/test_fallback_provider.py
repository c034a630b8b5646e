"""Test HTTP and JSON-RPC endpoint fallback mechanism."""

from unittest.mock import patch

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from xchain_defi.provider.fallback import JsonRpcError, ResilientRpcClient, RetryableHTTPStatus


class FakeNode:
    """JSON-RPC node answering ``getSlot``, or failing with a status code."""

    def __init__(self, slot: int):
        self.slot = slot
        self.fail_status: int | None = None
        self.rpc_error: dict | None = None
        self.calls = 0

    async def handle(self, request: web.Request) -> web.Response:
        self.calls += 1
        if self.fail_status:
            return web.Response(status=self.fail_status, text="node is sick")
        payload = await request.json()
        if self.rpc_error:
            return web.json_response({"jsonrpc": "2.0", "id": payload["id"], "error": self.rpc_error})
        return web.json_response({"jsonrpc": "2.0", "id": payload["id"], "result": self.slot})

    async def handle_missing(self, request: web.Request) -> web.Response:
        return web.json_response({"message": "not found"}, status=404)


async def start_node(node: FakeNode) -> TestServer:
    app = web.Application()
    app.router.add_post("/", node.handle)
    app.router.add_get("/missing", node.handle_missing)
    server = TestServer(app)
    await server.start_server()
    return server


@pytest_asyncio.fixture()
async def nodes():
    node_1, node_2 = FakeNode(slot=1), FakeNode(slot=2)
    server_1 = await start_node(node_1)
    server_2 = await start_node(node_2)
    try:
        yield node_1, node_2, str(server_1.make_url("/")), str(server_2.make_url("/"))
    finally:
        await server_1.close()
        await server_2.close()


@pytest_asyncio.fixture()
async def client(nodes):
    sleeps = []

    async def _sleep(seconds):
        sleeps.append(seconds)

    _, _, url_1, url_2 = nodes
    client = ResilientRpcClient([url_1, url_2], sleep=0.1, backoff=2, sleep_func=_sleep)
    client.sleeps = sleeps
    yield client
    await client.close()


@pytest.mark.asyncio
async def test_fallback_no_issue(client: ResilientRpcClient):
    """Call goes through the first endpoint."""
    assert await client.json_rpc("getSlot") == 1
    assert client.api_call_counts[0]["getSlot"] == 1
    assert client.api_call_counts[1]["getSlot"] == 0
    assert client.currently_active_endpoint == 0


@pytest.mark.asyncio
async def test_fallback_single_fault(client: ResilientRpcClient, nodes):
    """Second endpoint answers when the first one throttles."""
    node_1, _, _, _ = nodes
    node_1.fail_status = 429

    assert await client.json_rpc("getSlot") == 2
    assert client.api_call_counts[0]["getSlot"] == 0
    assert client.api_call_counts[1]["getSlot"] == 1
    assert client.currently_active_endpoint == 1
    assert client.sleeps == [0.1]


@pytest.mark.asyncio
async def test_fallback_connection_error(client: ResilientRpcClient):
    """Transport errors switch the endpoint too."""
    original = client._call_once
    failures = iter([aiohttp.ClientConnectionError("connection reset")])

    async def _flaky(*args, **kwargs):
        for error in failures:
            raise error
        return await original(*args, **kwargs)

    with patch.object(client, "_call_once", side_effect=_flaky):
        assert await client.json_rpc("getSlot") == 2

    assert client.retry_count == 1


@pytest.mark.asyncio
async def test_fallback_double_fault(client: ResilientRpcClient, nodes):
    """Both endpoints fail, backoff grows between retries and the last error is raised."""
    node_1, node_2, _, _ = nodes
    node_1.fail_status = 503
    node_2.fail_status = 502

    with pytest.raises(RetryableHTTPStatus):
        await client.json_rpc("getSlot")

    assert client.retry_count == 4
    assert client.sleeps == pytest.approx([0.1, 0.2, 0.4, 0.8])
    assert node_1.calls + node_2.calls == 5


@pytest.mark.asyncio
async def test_fallback_double_fault_recovery(client: ResilientRpcClient, nodes):
    """Both endpoints fail, then recover."""
    node_1, node_2, _, _ = nodes
    node_1.fail_status = 503
    node_2.fail_status = 503

    with pytest.raises(RetryableHTTPStatus):
        await client.json_rpc("getSlot")

    node_1.fail_status = node_2.fail_status = None
    assert await client.json_rpc("getSlot") in (1, 2)


@pytest.mark.asyncio
async def test_retryable_rpc_error(client: ResilientRpcClient, nodes):
    node_1, _, _, _ = nodes
    node_1.rpc_error = {"code": -32005, "message": "Node is behind"}

    assert await client.json_rpc("getSlot") == 2
    assert client.api_retry_counts[1]["getSlot"] == 1


@pytest.mark.asyncio
async def test_non_retryable_rpc_error(client: ResilientRpcClient, nodes):
    """Bad requests are the caller's problem, no endpoint switch."""
    node_1, _, _, _ = nodes
    node_1.rpc_error = {"code": -32602, "message": "Invalid params"}

    with pytest.raises(JsonRpcError) as exc_info:
        await client.json_rpc("getSlot")

    assert exc_info.value.code == -32602
    assert client.currently_active_endpoint == 0


@pytest.mark.asyncio
async def test_not_found_is_an_answer(client: ResilientRpcClient):
    result = await client.request("GET", "/missing")
    assert result.status == 404
    assert not result.ok
    assert result.data == {"message": "not found"}
    assert client.retry_count == 0


def test_reset_switch():
    client = ResilientRpcClient(["https://a.example", "https://b.example"])
    client.switch_endpoint("test")
    assert client.get_active_endpoint() == "https://b.example"
    client.reset_switch()
    assert client.get_active_endpoint() == "https://a.example"
