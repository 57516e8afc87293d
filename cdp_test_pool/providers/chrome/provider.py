"""Chrome remote debugging provider implementation."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from urllib.parse import quote

import aiohttp
from yarl import URL

from cdp_test_pool.cdp.connection import Teardown
from cdp_test_pool.providers.base import Endpoint, EndpointProvider
from cdp_test_pool.providers.chrome.config import ChromeConfig
from cdp_test_pool.providers.chrome.models import TargetInfo

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class ChromeProvider(EndpointProvider):
    """Endpoint provider for a browser with remote debugging enabled."""

    config: ChromeConfig
    session: aiohttp.ClientSession = field(repr=False)

    @classmethod
    @asynccontextmanager
    async def from_config(
        cls, config: ChromeConfig
    ) -> AsyncGenerator["ChromeProvider", None]:
        """Create provider with managed session lifecycle."""
        base_url = URL.build(scheme="http", host=config.host, port=config.port)
        async with aiohttp.ClientSession(base_url=base_url) as session:
            yield cls(config=config, session=session)

    async def resolve(self) -> Endpoint:
        """Find a matching target, opening one when configured to."""
        teardown: Teardown | None = None
        target = await self.poll_target()
        if target is None and self.config.open_url is not None:
            target = await self.open_target(self.config.open_url)
            teardown = partial(self.close_target, target.id)

        if target is None:
            target = await self.wait_for_target(
                timeout=self.config.timeout, poll_interval=self.config.poll_interval
            )

        if target.web_socket_debugger_url is None:
            raise RuntimeError(
                f"Target {target.id} has no WebSocket URL; "
                "is another debugger attached?"
            )
        log.info("Using target %s (%s) %s", target.id, target.type, target.url)
        return Endpoint(
            url=target.web_socket_debugger_url,
            context_name=self.config.context_name,
            teardown=teardown,
        )

    async def list_targets(self) -> Sequence[TargetInfo]:
        """List debuggable targets."""
        async with self.session.get("/json/list") as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(f"Failed to list targets: {response.status} {text}")
            data = await response.json(content_type=None)

        return [TargetInfo.model_validate(item) for item in data]

    def matches(self, target: TargetInfo) -> bool:
        """Whether ``target`` satisfies the configured filters."""
        if target.type != self.config.target_type:
            return False
        if self.config.url_contains and self.config.url_contains not in target.url:
            return False
        return True

    async def poll_target(self) -> TargetInfo | None:
        """Return the first matching target, or None if there is none yet."""
        for target in await self.list_targets():
            if self.matches(target):
                return target
        log.debug("No matching %s target yet", self.config.target_type)
        return None

    async def wait_for_target(
        self,
        timeout: float = 30,
        poll_interval: float = 0.5,
    ) -> TargetInfo:
        """Wait for a matching target to appear.

        Args:
            timeout: Maximum wait time in seconds
            poll_interval: Seconds between polls

        Returns:
            The first matching target

        Raises:
            TimeoutError: If no target appears within timeout

        """
        deadline = asyncio.get_running_loop().time() + timeout

        while True:
            if (target := await self.poll_target()) is not None:
                return target

            if asyncio.get_running_loop().time() >= deadline:
                raise TimeoutError(
                    f"No {self.config.target_type} target appeared within "
                    f"{timeout} seconds"
                )

            await asyncio.sleep(poll_interval)

    async def open_target(self, url: str) -> TargetInfo:
        """Open a new tab on ``url``."""
        endpoint = URL(f"/json/new?{quote(url, safe='')}", encoded=True)
        async with self.session.put(endpoint) as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(f"Failed to open target: {response.status} {text}")
            data = await response.json(content_type=None)

        target = TargetInfo.model_validate(data)
        log.info("Opened target %s on %s", target.id, url)
        return target

    async def close_target(self, target_id: str) -> None:
        """Close a target opened by :meth:`open_target`."""
        async with self.session.get(f"/json/close/{target_id}") as response:
            if response.status != 200:
                text = await response.text()
                raise RuntimeError(
                    f"Failed to close target {target_id}: {response.status} {text}"
                )
        log.info("Closed target %s", target_id)
