"""Abstract base class for CDP endpoint providers."""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

from cdp_test_pool.cdp.connection import (
    Connection,
    ContextFilter,
    ExecutionContext,
    Teardown,
    connect,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Endpoint:
    """A CDP WebSocket URL plus what is needed to use and release it."""

    url: str
    context_name: str | None = None
    teardown: Teardown | None = field(default=None, repr=False)

    def context_filter(self) -> ContextFilter | None:
        """Accept only contexts named ``context_name`` when one is set."""
        if self.context_name is None:
            return None
        name = self.context_name

        def matches(context: ExecutionContext) -> bool:
            return context.name == name

        return matches


@dataclass(frozen=True, kw_only=True)
class EndpointProvider(ABC):
    """Abstract base for endpoint providers.

    A provider turns host-specific discovery (a browser's HTTP endpoint, an
    application's own control channel, a literal URL) into a CDP WebSocket
    endpoint the pool can connect to.
    """

    @abstractmethod
    async def resolve(self) -> Endpoint:
        """Locate the endpoint to connect to.

        Returns:
            The endpoint, with an optional teardown for anything the provider
            created along the way

        """

    async def connect(
        self,
        *,
        timeout: float = 10.0,
        enable_domains: Sequence[str] = ("Runtime",),
    ) -> Connection:
        """Resolve the endpoint and open a connection to it.

        The endpoint teardown runs when the connection is disconnected, or
        right away when connecting fails.
        """
        endpoint = await self.resolve()
        log.info("Connecting to %s", endpoint.url)
        try:
            return await connect(
                endpoint.url,
                timeout=timeout,
                context_filter=endpoint.context_filter(),
                enable_domains=enable_domains,
                teardown=endpoint.teardown,
            )
        except BaseException:
            if endpoint.teardown is not None:
                try:
                    await endpoint.teardown()
                except Exception as exc:
                    log.warning(
                        "Endpoint teardown failed for %s: %s", endpoint.url, exc
                    )
            raise
