"""Bidirectional id-addressed calls over an arbitrary payload channel."""

import asyncio
import inspect
import itertools
import logging
import traceback
from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from cdp_test_pool import codec

log = logging.getLogger(__name__)

Post: TypeAlias = Callable[[str], Awaitable[None]]


class RpcError(Exception):
    """Base class for RPC failures."""


class RpcTimeoutError(RpcError):
    """No response arrived before the call deadline."""


class RpcClosedError(RpcError):
    """The peer was closed while or before the call was made."""


class RpcRemoteError(RpcError):
    """The other side answered with an error."""

    def __init__(self, name: str, message: str, remote_stack: str | None = None):
        super().__init__(f"{name}: {message}")
        self.name = name
        self.remote_message = message
        self.remote_stack = remote_stack

    @classmethod
    def from_payload(cls, error: Any) -> "RpcRemoteError":
        """Build from a serialized ``{name, message, stack}`` error."""
        if not isinstance(error, Mapping):
            return cls("Error", str(error))
        return cls(
            str(error.get("name") or "Error"),
            str(error.get("message") or ""),
            error.get("stack"),
        )


@dataclass(kw_only=True, eq=False)
class RpcPeer:
    """One end of an RPC link.

    ``post`` delivers a serialized envelope to the other side; incoming
    envelopes are fed to :meth:`handle`. Requests are answered from
    ``functions``, responses settle the matching pending call.
    """

    functions: Mapping[str, Callable[..., Any]]
    post: Post
    id_prefix: str = "p"
    timeout: float = 30.0
    _ids: Iterator[int] = field(default_factory=itertools.count)
    _pending: dict[str, asyncio.Future[Any]] = field(default_factory=dict)
    _tasks: set[asyncio.Task[None]] = field(default_factory=set)
    _consecutive_timeouts: int = 0
    _closed: RpcError | None = None

    @property
    def consecutive_timeouts(self) -> int:
        """Number of calls that timed out since the last successful one."""
        return self._consecutive_timeouts

    @property
    def closed(self) -> bool:
        """Whether :meth:`close` was called."""
        return self._closed is not None

    async def call(self, method: str, *args: Any, timeout: float | None = None) -> Any:
        """Call ``method`` on the other side and return its result.

        A late response to a timed-out call is discarded.

        Raises:
            RpcTimeoutError: If no response arrives within the timeout
            RpcRemoteError: If the other side answers with an error
            RpcClosedError: If the peer is closed

        """
        if self._closed is not None:
            raise RpcClosedError(str(self._closed))

        call_id = f"{self.id_prefix}{next(self._ids)}"
        deadline = self.timeout if timeout is None else timeout
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[call_id] = future
        try:
            await self.post(
                codec.stringify({"id": call_id, "method": method, "args": list(args)})
            )
            async with asyncio.timeout(deadline):
                result = await future
        except TimeoutError:
            self._consecutive_timeouts += 1
            raise RpcTimeoutError(
                f"RPC call {method} timed out after {deadline} seconds"
            ) from None
        finally:
            self._pending.pop(call_id, None)

        self._consecutive_timeouts = 0
        return result

    def handle(self, payload: str) -> None:
        """Process one incoming envelope."""
        try:
            message = codec.parse(payload)
        except codec.CodecError as exc:
            log.warning("Dropping malformed RPC payload: %s", exc)
            return
        if not isinstance(message, dict) or "id" not in message:
            log.warning("Dropping RPC payload without id: %.200s", payload)
            return

        if message.get("method") is not None:
            if self._closed is not None:
                log.debug("Ignoring %s request on closed peer", message["method"])
                return
            task = asyncio.create_task(self._answer(message))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return

        future = self._pending.get(message["id"])
        if future is None or future.done():
            log.debug("Discarding response for unknown call %s", message["id"])
            return
        if error := message.get("error"):
            future.set_exception(RpcRemoteError.from_payload(error))
        else:
            future.set_result(message.get("result"))

    async def _answer(self, message: Mapping[str, Any]) -> None:
        call_id = message["id"]
        method = message["method"]
        try:
            handler = self.functions.get(method)
            if handler is None:
                raise RpcError(f"Unknown function: {method}")
            result = handler(*(message.get("args") or ()))
            if inspect.isawaitable(result):
                result = await result
            payload = codec.stringify({"id": call_id, "result": result})
        except Exception as exc:
            log.debug("RPC handler %s failed: %s", method, exc)
            payload = codec.stringify(
                {
                    "id": call_id,
                    "error": {
                        "name": type(exc).__name__,
                        "message": str(exc),
                        "stack": "".join(traceback.format_exception(exc)),
                    },
                }
            )

        try:
            await self.post(payload)
        except Exception as exc:
            log.warning("Could not deliver response to %s: %s", method, exc)

    async def close(self, reason: RpcError | None = None) -> None:
        """Reject pending calls and stop answering requests."""
        if self._closed is not None:
            return
        self._closed = reason or RpcClosedError("RPC peer closed")
        for future in self._pending.values():
            if not future.done():
                future.set_exception(RpcClosedError(str(self._closed)))
        self._pending.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
