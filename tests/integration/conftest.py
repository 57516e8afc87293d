"""Fixtures for integration tests against a local DevTools endpoint."""

from collections.abc import AsyncGenerator, Generator

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from aioresponses import aioresponses as aioresponses_cls

from cdp_test_pool.testing.server import WS_PATH, FakeCdpServer


@pytest.fixture
async def cdp_server() -> AsyncGenerator[FakeCdpServer, None]:
    """Serve a fake CDP endpoint on a free local port."""
    fake = FakeCdpServer()
    app = web.Application()
    app.router.add_get(WS_PATH, fake.handle)

    server = TestServer(app)
    await server.start_server()
    fake.url = str(server.make_url(WS_PATH).with_scheme("ws"))
    try:
        yield fake
    finally:
        await fake.drop()
        await server.close()


@pytest.fixture
def aioresponses() -> Generator[aioresponses_cls, None, None]:
    """Mock outgoing HTTP requests made with aiohttp."""
    with aioresponses_cls() as mock:
        yield mock
