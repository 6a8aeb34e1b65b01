"""
Fixtures for integration tests.

Runs real aiohttp and websockets servers on the loopback interface so the
transport is exercised end to end without leaving the machine.
"""

import asyncio

import pytest
import pytest_asyncio
import websockets
from aiohttp import web
from aiohttp.test_utils import TestServer

from stormlink.config import TransportConfig
from stormlink.models import InterfaceKind, Reachability
from stormlink.network import TransportClient


async def _ok(request):
    return web.Response(body=b"welcome")


async def _echo_json(request):
    return web.json_response(await request.json())


async def _slow(request):
    await asyncio.sleep(1.0)
    return web.Response(body=b"late")


async def _status(request):
    return web.Response(status=int(request.match_info["code"]), body=b"nope")


@pytest_asyncio.fixture
async def http_server():
    app = web.Application()
    app.router.add_route("*", "/ok", _ok)
    app.router.add_post("/echo", _echo_json)
    app.router.add_get("/slow", _slow)
    app.router.add_route("*", "/status/{code}", _status)

    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    yield server
    await server.close()


async def _stream_handler(websocket):
    """Plays a script chosen by the request path."""
    path = websocket.request.path
    if path == "/burst":
        for frame in (b"one", b"two", b"three"):
            await websocket.send(frame)
        await websocket.wait_closed()
    elif path == "/echo":
        async for frame in websocket:
            await websocket.send(frame)
    elif path == "/hangup":
        await asyncio.sleep(0.2)
        await websocket.close()
    elif path == "/reject":
        await websocket.close()
    else:
        await websocket.wait_closed()


@pytest_asyncio.fixture
async def stream_server():
    async with websockets.serve(_stream_handler, "127.0.0.1", 0) as server:
        port = list(server.sockets)[0].getsockname()[1]
        yield f"ws://127.0.0.1:{port}"


@pytest.fixture
def transport_config(http_server):
    return TransportConfig(
        handshake_confirm_delay=0.05,
        probe_target=str(http_server.make_url("/ok")),
        reachability_interval=3600.0,
    )


async def loopback_path():
    return Reachability(is_reachable=True, interface_kind=InterfaceKind.LOOPBACK)


@pytest_asyncio.fixture
async def transport(transport_config):
    client = TransportClient(transport_config, path_probe=loopback_path)
    await client.start()
    yield client
    await client.close()


@pytest_asyncio.fixture
async def slow_confirm_transport(transport_config):
    """Transport whose streams take a full second to be confirmed."""
    config = transport_config.model_copy(update={"handshake_confirm_delay": 1.0})
    client = TransportClient(config, path_probe=loopback_path)
    await client.start()
    yield client
    await client.close()
