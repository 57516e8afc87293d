"""Provider connecting to a known CDP WebSocket URL."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from cdp_test_pool.providers.base import Endpoint, EndpointProvider
from cdp_test_pool.providers.websocket.config import WebSocketConfig


@dataclass(frozen=True, kw_only=True)
class WebSocketProvider(EndpointProvider):
    """Endpoint provider for a URL obtained out of band."""

    config: WebSocketConfig

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: WebSocketConfig
    ) -> AsyncGenerator["WebSocketProvider", None]:
        """Create provider; nothing needs to be released."""
        yield cls(config=config)

    async def resolve(self) -> Endpoint:
        """Return the configured URL."""
        return Endpoint(url=self.config.url, context_name=self.config.context_name)
