"""Open a CDP session and wait for a usable execution context."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, TypeAlias

import aiohttp
from pydantic import BaseModel, ConfigDict, Field

from cdp_test_pool.cdp.client import CdpClient, CdpError, CdpEvent

log = logging.getLogger(__name__)

Teardown: TypeAlias = Callable[[], Awaitable[None]]
ContextFilter: TypeAlias = Callable[["ExecutionContext"], bool]


class ConnectionTimeoutError(TimeoutError):
    """No execution context appeared in time."""


class ExecutionContext(BaseModel):
    """An ``ExecutionContextDescription`` reported by the Runtime domain."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    unique_id: str | None = Field(default=None, alias="uniqueId")
    origin: str = ""
    name: str = ""
    aux_data: Mapping[str, Any] = Field(default_factory=dict, alias="auxData")


@dataclass(kw_only=True, eq=False)
class Connection:
    """A CDP client bound to one execution context."""

    url: str
    client: CdpClient
    context: ExecutionContext
    session_id: str | None = None
    teardown: Teardown | None = field(default=None, repr=False)
    worker_injected: bool = False

    @property
    def closed(self) -> bool:
        """Whether the underlying client is gone."""
        return self.client.closed

    def context_target(self) -> dict[str, Any]:
        """Parameters selecting the execution context in Runtime commands."""
        if self.context.unique_id is not None:
            return {"uniqueContextId": self.context.unique_id}
        return {"contextId": self.context.id}

    async def send(
        self, method: str, params: Mapping[str, Any] | None = None
    ) -> Mapping[str, Any]:
        """Send a command within this connection's session."""
        return await self.client.send(method, params, session_id=self.session_id)

    async def disconnect(self) -> None:
        """Close the client and run the endpoint teardown.

        Failures are logged; tearing down never raises.
        """
        try:
            await self.client.close()
        except (CdpError, aiohttp.ClientError, OSError) as exc:
            log.warning("Error while closing CDP connection to %s: %s", self.url, exc)

        if self.teardown is not None:
            try:
                await self.teardown()
            except Exception as exc:
                log.warning("Endpoint teardown failed for %s: %s", self.url, exc)


async def connect(
    url: str,
    *,
    timeout: float = 10.0,
    context_filter: ContextFilter | None = None,
    enable_domains: Sequence[str] = ("Runtime",),
    session_id: str | None = None,
    teardown: Teardown | None = None,
    session: aiohttp.ClientSession | None = None,
) -> Connection:
    """Connect to ``url`` and return once an execution context is ready.

    The context listener is installed before any domain is enabled because
    ``Runtime.enable`` replays existing contexts as events. ``Runtime`` is
    always enabled last.

    Raises:
        CdpConnectionClosedError: If the WebSocket cannot be opened
        ConnectionTimeoutError: If no matching context appears in ``timeout``

    """
    client = await CdpClient.open(url, session=session)
    loop = asyncio.get_running_loop()
    ready: asyncio.Future[ExecutionContext] = loop.create_future()

    def on_context_created(event: CdpEvent) -> None:
        if ready.done():
            return
        if session_id is not None and event.session_id != session_id:
            return
        context = ExecutionContext.model_validate(event.params["context"])
        if context_filter is not None and not context_filter(context):
            log.debug("Ignoring execution context %s (%s)", context.id, context.name)
            return
        ready.set_result(context)

    client.on("Runtime.executionContextCreated", on_context_created)
    try:
        domains = [domain for domain in enable_domains if domain != "Runtime"]
        for domain in [*domains, "Runtime"]:
            await client.send(f"{domain}.enable", session_id=session_id)

        try:
            await client.send("Runtime.runIfWaitingForDebugger", session_id=session_id)
        except CdpError as exc:
            log.debug("Runtime.runIfWaitingForDebugger not available: %s", exc)

        try:
            async with asyncio.timeout(timeout):
                context = await ready
        except TimeoutError:
            raise ConnectionTimeoutError(
                f"No execution context from {url} within {timeout} seconds"
            ) from None
    except BaseException:
        await client.close()
        raise
    finally:
        client.off("Runtime.executionContextCreated", on_context_created)

    log.info(
        "Connected to %s (context id=%s name=%r origin=%r)",
        url,
        context.id,
        context.name,
        context.origin,
    )
    return Connection(
        url=url,
        client=client,
        context=context,
        session_id=session_id,
        teardown=teardown,
    )
