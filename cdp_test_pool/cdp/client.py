"""Minimal asyncio client for the Chrome DevTools Protocol."""

import asyncio
import itertools
import json
import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

import aiohttp

log = logging.getLogger(__name__)


class CdpError(Exception):
    """Base class for CDP transport failures."""


class CdpProtocolError(CdpError):
    """A command was answered with an ``error`` object."""

    def __init__(
        self, method: str, code: int, message: str, data: str | None = None
    ) -> None:
        detail = f" ({data})" if data else ""
        super().__init__(f"{method} failed: {message} [{code}]{detail}")
        self.method = method
        self.code = code
        self.data = data


class CdpConnectionClosedError(CdpError):
    """The WebSocket is closed or could not be opened."""


@dataclass(frozen=True, kw_only=True)
class CdpEvent:
    """An event notification received from the endpoint."""

    method: str
    params: Mapping[str, Any]
    session_id: str | None = None


EventHandler: TypeAlias = Callable[[CdpEvent], None]
CloseHandler: TypeAlias = Callable[[CdpError], None]


@dataclass(kw_only=True, eq=False)
class CdpClient:
    """One WebSocket connection to a CDP endpoint.

    Commands are correlated with responses by id. Events are dispatched to
    synchronous handlers in arrival order from a single reader task, so
    handlers must not block; they schedule work instead.
    """

    url: str
    ws: aiohttp.ClientWebSocketResponse = field(repr=False)
    session: aiohttp.ClientSession = field(repr=False)
    owns_session: bool = True
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))
    _pending: dict[int, asyncio.Future[Mapping[str, Any]]] = field(
        default_factory=dict, repr=False
    )
    _handlers: dict[str, list[EventHandler]] = field(default_factory=dict, repr=False)
    _close_handlers: list[CloseHandler] = field(default_factory=list, repr=False)
    _reader: asyncio.Task[None] | None = field(default=None, repr=False)
    _closed: CdpError | None = field(default=None, repr=False)

    @classmethod
    async def open(
        cls,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0,
    ) -> "CdpClient":
        """Connect to ``url`` and start reading messages."""
        owns_session = session is None
        if session is None:
            session = aiohttp.ClientSession()
        try:
            ws = await session.ws_connect(url, heartbeat=heartbeat, max_msg_size=0)
        except (aiohttp.ClientError, OSError) as exc:
            if owns_session:
                await session.close()
            raise CdpConnectionClosedError(f"Cannot connect to {url}: {exc}") from exc

        client = cls(url=url, ws=ws, session=session, owns_session=owns_session)
        client._reader = asyncio.create_task(client._read_loop(), name=f"cdp {url}")
        log.debug("Connected to %s", url)
        return client

    @property
    def closed(self) -> bool:
        """Whether the connection is gone."""
        return self._closed is not None

    def on(self, method: str, handler: EventHandler) -> None:
        """Call ``handler`` for every ``method`` event."""
        self._handlers.setdefault(method, []).append(handler)

    def off(self, method: str, handler: EventHandler) -> None:
        """Remove a handler registered with :meth:`on`."""
        handlers = self._handlers.get(method, [])
        if handler in handlers:
            handlers.remove(handler)

    def on_close(self, handler: CloseHandler) -> None:
        """Call ``handler`` once when the connection goes away."""
        self._close_handlers.append(handler)

    def off_close(self, handler: CloseHandler) -> None:
        """Remove a handler registered with :meth:`on_close`."""
        if handler in self._close_handlers:
            self._close_handlers.remove(handler)

    async def send(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> Mapping[str, Any]:
        """Send a command and return its ``result`` object.

        Raises:
            CdpProtocolError: If the endpoint answers with an error
            CdpConnectionClosedError: If the connection is or becomes closed
            TimeoutError: If ``timeout`` elapses first

        """
        if self._closed is not None:
            raise CdpConnectionClosedError(str(self._closed))

        message_id = next(self._ids)
        message: dict[str, Any] = {"id": message_id, "method": method}
        if params:
            message["params"] = dict(params)
        if session_id is not None:
            message["sessionId"] = session_id

        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            try:
                await self.ws.send_str(json.dumps(message))
            except (ConnectionResetError, aiohttp.ClientError) as exc:
                raise CdpConnectionClosedError(
                    f"Cannot send {method}: {exc}"
                ) from exc
            async with asyncio.timeout(timeout):
                response = await future
        finally:
            self._pending.pop(message_id, None)

        if error := response.get("error"):
            raise CdpProtocolError(
                method,
                error.get("code", 0),
                error.get("message", "unknown error"),
                error.get("data"),
            )
        result: Mapping[str, Any] = response.get("result", {})
        return result

    async def close(self) -> None:
        """Close the WebSocket, and the HTTP session when it is owned."""
        self._shutdown(CdpConnectionClosedError("Connection closed by client"))
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        await self.ws.close()
        if self.owns_session:
            await self.session.close()
        log.debug("Disconnected from %s", self.url)

    async def _read_loop(self) -> None:
        reason = CdpConnectionClosedError(f"Connection to {self.url} closed")
        try:
            async for message in self.ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    reason = CdpConnectionClosedError(
                        f"Connection to {self.url} failed: {self.ws.exception()}"
                    )
                    break
        finally:
            self._shutdown(reason)

    def _dispatch(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Ignoring malformed CDP message: %.200s", raw)
            return

        if "id" in data:
            future = self._pending.get(data["id"])
            if future is not None and not future.done():
                future.set_result(data)
            return

        method = data.get("method")
        if method is None:
            return
        event = CdpEvent(
            method=method,
            params=data.get("params", {}),
            session_id=data.get("sessionId"),
        )
        for handler in list(self._handlers.get(method, ())):
            try:
                handler(event)
            except Exception:
                log.exception("Handler for %s failed", method)

    def _shutdown(self, reason: CdpError) -> None:
        if self._closed is not None:
            return
        self._closed = reason
        for future in self._pending.values():
            if not future.done():
                future.set_exception(CdpConnectionClosedError(str(reason)))
        self._pending.clear()
        for handler in list(self._close_handlers):
            try:
                handler(reason)
            except Exception:
                log.exception("Close handler failed")
