"""Tests for the RPC peer."""

import asyncio
import logging
from collections.abc import Callable, Mapping
from typing import Any

import pytest

from cdp_test_pool import codec
from cdp_test_pool.rpc.peer import (
    RpcClosedError,
    RpcPeer,
    RpcRemoteError,
    RpcTimeoutError,
)


def linked_peers(
    pool_functions: Mapping[str, Callable[..., Any]],
    worker_functions: Mapping[str, Callable[..., Any]],
) -> tuple[RpcPeer, RpcPeer]:
    """Two peers delivering envelopes straight to each other."""
    peers: dict[str, RpcPeer] = {}

    async def to_worker(payload: str) -> None:
        peers["worker"].handle(payload)

    async def to_pool(payload: str) -> None:
        peers["pool"].handle(payload)

    peers["pool"] = RpcPeer(functions=pool_functions, post=to_worker)
    peers["worker"] = RpcPeer(functions=worker_functions, post=to_pool, id_prefix="w")
    return peers["pool"], peers["worker"]


class SilentChannel:
    """Post target that records envelopes and never answers."""

    def __init__(self) -> None:
        self.posted: list[Any] = []

    async def __call__(self, payload: str) -> None:
        self.posted.append(codec.parse(payload))


class TestCall:
    """Tests for RpcPeer.call."""

    async def test_returns_remote_result(self) -> None:
        """Calls reach the other side's function table."""
        pool, _ = linked_peers({}, {"ping": lambda: "pong"})

        assert await pool.call("ping") == "pong"

    async def test_awaits_async_handlers(self) -> None:
        """Coroutine handlers are awaited before answering."""

        async def add(a: int, b: int) -> int:
            await asyncio.sleep(0)
            return a + b

        pool, _ = linked_peers({}, {"add": add})

        assert await pool.call("add", 2, 3) == 5

    async def test_calls_in_both_directions(self) -> None:
        """The worker side can call the pool while a pool call is pending."""
        seen: list[str] = []
        peers: dict[str, RpcPeer] = {}

        async def run_tests() -> str:
            await peers["worker"].call("log", "running")
            return "finished"

        pool, worker = linked_peers({"log": seen.append}, {"runTests": run_tests})
        peers["worker"] = worker

        assert await pool.call("runTests") == "finished"
        assert seen == ["running"]

    async def test_remote_error(self) -> None:
        """Handler exceptions come back as RpcRemoteError."""

        def fail() -> None:
            raise ValueError("bad input")

        pool, _ = linked_peers({}, {"fail": fail})

        with pytest.raises(RpcRemoteError, match="ValueError: bad input") as exc_info:
            await pool.call("fail")

        assert exc_info.value.name == "ValueError"
        assert exc_info.value.remote_stack is not None

    async def test_unknown_function(self) -> None:
        """Calling a missing function is answered with an error."""
        pool, _ = linked_peers({}, {})

        with pytest.raises(RpcRemoteError, match="Unknown function: nope"):
            await pool.call("nope")

    async def test_envelope_shape(self) -> None:
        """Requests carry a prefixed id, the method and the arguments."""
        channel = SilentChannel()
        peer = RpcPeer(functions={}, post=channel, timeout=0.01)

        with pytest.raises(RpcTimeoutError):
            await peer.call("setConfig", {"retry": 1})

        assert channel.posted == [
            {"id": "p0", "method": "setConfig", "args": [{"retry": 1}]}
        ]

    async def test_ids_count_up_per_peer(self) -> None:
        """Each call takes the next id from the peer's own counter."""
        channel = SilentChannel()
        peer = RpcPeer(functions={}, post=channel, timeout=0.01, id_prefix="w")
        other = RpcPeer(functions={}, post=SilentChannel(), timeout=0.01)

        for _ in range(2):
            with pytest.raises(RpcTimeoutError):
                await peer.call("onTaskUpdate", [])
        with pytest.raises(RpcTimeoutError):
            await other.call("ping")

        assert [message["id"] for message in channel.posted] == ["w0", "w1"]


class TestTimeouts:
    """Tests for timeout handling."""

    async def test_counts_consecutive_timeouts(self) -> None:
        """Each timed-out call increments the counter."""
        peer = RpcPeer(functions={}, post=SilentChannel(), timeout=0.01)

        for _ in range(2):
            with pytest.raises(RpcTimeoutError, match="timed out after 0.01"):
                await peer.call("ping")

        assert peer.consecutive_timeouts == 2

    async def test_success_resets_counter(self) -> None:
        """A successful call resets the consecutive timeout counter."""
        channel = SilentChannel()
        peer = RpcPeer(functions={}, post=channel, timeout=0.01)
        with pytest.raises(RpcTimeoutError):
            await peer.call("ping")

        call = asyncio.create_task(peer.call("ping", timeout=1))
        await asyncio.sleep(0)
        peer.handle(codec.stringify({"id": channel.posted[-1]["id"], "result": "pong"}))

        assert await call == "pong"
        assert peer.consecutive_timeouts == 0

    async def test_late_response_is_discarded(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A response arriving after the deadline is ignored."""
        peer = RpcPeer(functions={}, post=SilentChannel(), timeout=0.01)
        with pytest.raises(RpcTimeoutError):
            await peer.call("ping")

        with caplog.at_level(logging.DEBUG, logger="cdp_test_pool.rpc.peer"):
            peer.handle(codec.stringify({"id": "p0", "result": "pong"}))

        assert "Discarding response for unknown call p0" in caplog.text


class TestClose:
    """Tests for RpcPeer.close."""

    async def test_rejects_pending_calls(self) -> None:
        """Pending calls fail with RpcClosedError."""
        peer = RpcPeer(functions={}, post=SilentChannel())
        call = asyncio.create_task(peer.call("runTests"))
        await asyncio.sleep(0)

        await peer.close()

        with pytest.raises(RpcClosedError):
            await call
        assert peer.closed

    async def test_rejects_new_calls(self) -> None:
        """Calls after close fail immediately."""
        peer = RpcPeer(functions={}, post=SilentChannel())
        await peer.close(RpcClosedError("Connection lost"))

        with pytest.raises(RpcClosedError, match="Connection lost"):
            await peer.call("ping")


def test_handle_drops_malformed_payload(caplog: pytest.LogCaptureFixture) -> None:
    """Malformed payloads are logged and dropped."""
    peer = RpcPeer(functions={}, post=SilentChannel())

    with caplog.at_level(logging.WARNING):
        peer.handle("not json")

    assert "Dropping malformed RPC payload" in caplog.text
