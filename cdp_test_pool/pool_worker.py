"""Pool worker running test files inside a remote runtime over CDP.

Lifecycle: ``start`` (connect, open the RPC channel, inject the runtime,
ping), ``run_files`` (bundle, ship, run or collect, remap, report, one file
at a time) and ``stop``. A host may instead drive the worker with ``send``
messages and listen for ``message`` and ``error`` events.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, TypeAlias, TypeVar, cast

from cdp_test_pool.bundler import BundleError, Bundler
from cdp_test_pool.cdp.client import CdpConnectionClosedError, CdpError
from cdp_test_pool.cdp.connection import Connection, ConnectionTimeoutError
from cdp_test_pool.cdp.evaluate import RemoteEvaluationError, evaluate
from cdp_test_pool.config import PollPolicy, PoolConfig
from cdp_test_pool.models.tasks import File, TaskError, generate_file_id
from cdp_test_pool.remapper import StackRemapper
from cdp_test_pool.reporting import HostReporter, display_path
from cdp_test_pool.rpc.channel import CdpChannel
from cdp_test_pool.rpc.functions import PoolFunctions, WorkerClient
from cdp_test_pool.rpc.peer import (
    RpcClosedError,
    RpcError,
    RpcPeer,
    RpcRemoteError,
    RpcTimeoutError,
)
from cdp_test_pool.worker import load_worker_runtime

log = logging.getLogger(__name__)

RunMode: TypeAlias = Literal["run", "collect"]
Connect: TypeAlias = Callable[[], Awaitable[Connection]]
Listener: TypeAlias = Callable[[Any], None]

T = TypeVar("T")


class WorkerStartupError(RuntimeError):
    """The worker runtime did not come up on the remote side."""


class ConnectionLostError(RuntimeError):
    """The remote runtime stopped answering; the run cannot continue."""


@dataclass(kw_only=True)
class ConnectionCache:
    """Holds one live connection so later pool workers can reuse it."""

    connection: Connection | None = None

    def get(self) -> Connection | None:
        """Return the cached connection if it is still open."""
        if self.connection is not None and self.connection.closed:
            log.info("Cached connection to %s is closed", self.connection.url)
            self.connection = None
        return self.connection

    async def close(self) -> None:
        """Disconnect and forget the cached connection."""
        connection, self.connection = self.connection, None
        if connection is not None:
            await connection.disconnect()


def serialize_exception(exc: BaseException) -> TaskError:
    """Task error describing a host-side failure."""
    return TaskError(name=type(exc).__name__, message=str(exc))


def synthetic_failure(filepath: str, root: Path, exc: BaseException) -> File:
    """A task tree with one failed test reporting why ``filepath`` did not run."""
    name = display_path(filepath, root)
    file_id = generate_file_id(name)
    file: dict[str, Any] = {
        "id": file_id,
        "name": name,
        "type": "suite",
        "mode": "run",
        "status": "fail",
        "filepath": filepath,
        "duration": 0.0,
        "tasks": [],
    }
    file["file"] = file
    file["tasks"].append(
        {
            "id": f"{file_id}_0",
            "name": name,
            "type": "test",
            "mode": "run",
            "status": "fail",
            "duration": 0.0,
            "file": file,
            "suite": file,
            "errors": [serialize_exception(exc)],
        }
    )
    return cast(File, file)


@dataclass(kw_only=True, eq=False)
class CdpPoolWorker:
    """Runs test files sequentially in one remote execution context."""

    name = "cdp"

    config: PoolConfig
    connect: Connect
    reporter: HostReporter
    cache: ConnectionCache | None = None
    bundler: Bundler | None = None
    remapper: StackRemapper | None = None
    connection: Connection | None = field(default=None, init=False)
    _channel: CdpChannel | None = field(default=None, init=False, repr=False)
    _peer: RpcPeer | None = field(default=None, init=False, repr=False)
    _worker: WorkerClient | None = field(default=None, init=False, repr=False)
    _functions: PoolFunctions | None = field(default=None, init=False, repr=False)
    _bundler: Bundler = field(init=False, repr=False)
    _config_sent: bool = field(default=False, init=False)
    _listeners: dict[str, list[Listener]] = field(
        default_factory=dict, init=False, repr=False
    )
    _tasks: set[asyncio.Task[None]] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        self._bundler = self.bundler or Bundler(
            root=self.config.root, config=self.config.bundler
        )
        if self.remapper is None and self.config.error_sourcemapping:
            self.remapper = StackRemapper(
                project_root=self.config.root,
                show_bundled_stack=self.config.show_bundled_stack,
                filter_runtime_frames=self.config.filter_runtime_frames,
            )

    @property
    def worker(self) -> WorkerClient:
        """Client for the remote worker functions."""
        if self._worker is None:
            raise WorkerStartupError("Pool worker is not started")
        return self._worker

    async def start(self) -> None:
        """Connect, inject the worker runtime and check that it answers.

        A failed start releases everything it set up, so a cached connection
        is left without listeners.

        Raises:
            ConnectionTimeoutError: If connecting takes too long
            WorkerStartupError: If the runtime cannot be injected or pinged

        """
        connection = self._reusable_connection()
        if connection is None:
            connection = await self._open_connection()
        self.connection = connection

        try:
            await self._start_worker(connection)
        except BaseException:
            await self.stop()
            raise
        log.info("Worker runtime ready on %s", connection.url)

    async def _start_worker(self, connection: Connection) -> None:
        self._functions = PoolFunctions(
            root=self.config.root, reporter=self.reporter, remapper=self.remapper
        )
        self._channel = CdpChannel(
            connection=connection,
            on_payload=self._on_payload,
            transport=self.config.transport,
        )
        self._peer = RpcPeer(
            functions=self._functions.table(),
            post=self._channel.post,
            timeout=self.config.rpc_timeout,
        )
        self._worker = WorkerClient(
            peer=self._peer, run_timeout=self.config.run_timeout
        )
        self._config_sent = False
        connection.client.on_close(self._on_connection_closed)

        try:
            await self._channel.open()
            if self.config.before_tests:
                log.info("Evaluating before-tests expression")
                await evaluate(
                    connection,
                    self.config.before_tests,
                    await_promise=True,
                    poll_policy=self._poll_policy(),
                )
            if not connection.worker_injected:
                log.debug(
                    "Injecting worker runtime into context %s", connection.context.id
                )
                await evaluate(connection, load_worker_runtime())
                connection.worker_injected = True
            pong = await self._worker.ping()
        except (CdpError, RemoteEvaluationError, RpcError) as exc:
            raise WorkerStartupError(f"Worker runtime did not start: {exc}") from exc
        if pong != "pong":
            raise WorkerStartupError(f"Unexpected ping response: {pong!r}")

    async def run_files(
        self, filepaths: Sequence[str], mode: RunMode = "run"
    ) -> list[File]:
        """Run or collect ``filepaths`` one after another.

        Per-file failures become a synthetic failed test in that file's
        tree; only connection failures are raised.

        Raises:
            ConnectionLostError: If the remote side stops answering
            WorkerStartupError: If the runtime rejects its configuration

        """
        worker = self.worker
        if not self._config_sent:
            try:
                await self._guarded(worker.set_config(self._worker_config()))
            except (RpcTimeoutError, RpcRemoteError) as exc:
                raise WorkerStartupError(
                    f"Worker runtime rejected its configuration: {exc}"
                ) from exc
            self._config_sent = True

        files: list[File] = []
        for filepath in filepaths:
            file = await self._run_file(filepath, mode)
            files.append(file)
            self._emit(
                "message",
                {
                    "type": "testfileFinished",
                    "filepath": file["filepath"],
                    "file": file,
                },
            )
        return files

    async def stop(self) -> None:
        """Release the channel and disconnect unless the connection is cached.

        Errors while tearing down are logged and never raised.
        """
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        if self._peer is not None:
            await self._peer.close()
            self._peer = None
        self._worker = None

        connection, self.connection = self.connection, None
        if connection is None:
            return
        connection.client.off_close(self._on_connection_closed)
        if self.cache is not None and self.config.reuse_connection:
            self.cache.connection = connection
            log.debug("Keeping connection to %s for reuse", connection.url)
        else:
            await connection.disconnect()

    def send(self, message: Mapping[str, Any]) -> None:
        """Handle a host message asynchronously.

        Messages are ``{"type": "start"}``, ``{"type": "run", "files": [...]}``,
        ``{"type": "collect", "files": [...]}`` and ``{"type": "stop"}``.
        """
        task = asyncio.create_task(self._handle_message(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe to ``message`` or ``error`` events."""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        """Remove a listener added with :meth:`on`."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def deserialize(self, data: Any) -> Any:
        """Messages are already Python objects."""
        return data

    async def _handle_message(self, message: Mapping[str, Any]) -> None:
        try:
            match message.get("type"):
                case "start":
                    await self.start()
                    self._emit("message", {"type": "started"})
                case "run" | "collect" as mode:
                    await self.run_files(message.get("files", ()), mode)
                case "stop":
                    await self.stop()
                    self._emit("message", {"type": "stopped"})
                case other:
                    raise ValueError(f"Unknown message type: {other!r}")
        except Exception as exc:
            log.debug("Pool worker message %s failed: %s", message.get("type"), exc)
            self._emit("error", exc)

    async def _run_file(self, filepath: str, mode: RunMode) -> File:
        try:
            bundled = await self._bundler.bundle(filepath)
        except BundleError as exc:
            log.error("%s", exc)
            return self._report_failure(filepath, exc)

        if self.remapper is not None:
            self.remapper.store(bundled.filepath, bundled.sourcemap)
        if self._functions is not None:
            self._functions.current_file = bundled.filepath

        worker = self.worker
        call = worker.run_tests if mode == "run" else worker.collect_tests
        try:
            await self._guarded(worker.set_bundled_code(bundled.filepath, bundled.code))
            files = await self._guarded(call([bundled.filepath]))
        except (RpcTimeoutError, RpcRemoteError) as exc:
            log.error("Running %s failed: %s", filepath, exc)
            return self._report_failure(bundled.filepath, exc)

        file = files[0]
        if self.remapper is not None:
            self.remapper.remap_file(file)
        return file

    async def _guarded(self, call: Awaitable[T]) -> T:
        try:
            return await call
        except RpcTimeoutError as exc:
            peer = self._peer
            limit = self.config.max_consecutive_timeouts
            if peer is not None and peer.consecutive_timeouts >= limit:
                raise ConnectionLostError(
                    f"{peer.consecutive_timeouts} consecutive RPC timeouts"
                ) from exc
            raise
        except (RpcClosedError, CdpConnectionClosedError) as exc:
            raise ConnectionLostError(f"Connection lost: {exc}") from exc
        except RemoteEvaluationError as exc:
            raise ConnectionLostError(f"Worker runtime is unreachable: {exc}") from exc

    def _report_failure(self, filepath: str, exc: BaseException) -> File:
        file = synthetic_failure(filepath, self.config.root, exc)
        self.reporter.on_collected([file])
        test = file["tasks"][0]
        self.reporter.on_task_update(
            [
                (
                    test["id"],
                    {"status": "fail", "duration": 0.0, "errors": test["errors"]},
                )
            ]
        )
        return file

    def _reusable_connection(self) -> Connection | None:
        if self.cache is None or not self.config.reuse_connection:
            return None
        connection = self.cache.get()
        if connection is not None:
            log.info("Reusing connection to %s", connection.url)
        return connection

    async def _open_connection(self) -> Connection:
        try:
            async with asyncio.timeout(self.config.connection_timeout):
                connection = await self.connect()
        except TimeoutError as exc:
            raise ConnectionTimeoutError(
                f"Could not connect within {self.config.connection_timeout} seconds"
            ) from exc
        if self.cache is not None and self.config.reuse_connection:
            self.cache.connection = connection
        return connection

    def _worker_config(self) -> dict[str, Any]:
        worker_config = self.config.runner.to_worker_config(self.config.root)
        worker_config["rpcTimeout"] = int(self.config.rpc_timeout * 1000)
        return worker_config

    def _poll_policy(self) -> PollPolicy | None:
        if self.config.await_mode == "poll":
            return self.config.promise_polling
        return None

    def _on_payload(self, payload: str) -> None:
        if self._peer is not None:
            self._peer.handle(payload)

    def _on_connection_closed(self, reason: CdpError) -> None:
        log.error("Connection lost: %s", reason)
        if self._peer is not None:
            task = asyncio.create_task(
                self._peer.close(RpcClosedError(f"Connection lost: {reason}"))
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        self._emit("error", ConnectionLostError(str(reason)))

    def _emit(self, event: str, payload: Any) -> None:
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(payload)
            except Exception:
                log.exception("Listener for %s failed", event)
