"""Shared fixtures for unit tests."""

import pytest

from cdp_test_pool.cdp.connection import Connection, ExecutionContext
from cdp_test_pool.testing.fakes import FakeCdpClient


@pytest.fixture
def fake_client() -> FakeCdpClient:
    """In-memory CDP client."""
    return FakeCdpClient()


@pytest.fixture
def connection(fake_client: FakeCdpClient) -> Connection:
    """Connection bound to context 1 of the fake client."""
    return Connection(
        url=fake_client.url,
        client=fake_client,  # type: ignore[arg-type]
        context=ExecutionContext(id=1, unique_id="ctx-1", name="main"),
    )
