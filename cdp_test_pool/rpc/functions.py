"""Typed function tables on both ends of the worker link."""

import asyncio
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cdp_test_pool.models.tasks import File, TaskUpdatePack
from cdp_test_pool.remapper import StackRemapper
from cdp_test_pool.reporting import HostReporter
from cdp_test_pool.rpc.peer import RpcPeer

log = logging.getLogger(__name__)
worker_log = logging.getLogger("cdp_test_pool.worker")


@dataclass(frozen=True, kw_only=True)
class WorkerClient:
    """Calls into the remote worker runtime."""

    peer: RpcPeer
    run_timeout: float = 600.0

    async def ping(self) -> str:
        """Return ``"pong"`` when the runtime is alive."""
        result: str = await self.peer.call("ping")
        return result

    async def set_config(self, config: Mapping[str, Any]) -> None:
        await self.peer.call("setConfig", dict(config))

    async def set_bundled_code(self, filepath: str, code: str) -> None:
        await self.peer.call("setBundledCode", filepath, code)

    async def run_tests(self, filepaths: Sequence[str]) -> list[File]:
        """Import and execute ``filepaths``; resolves with their task trees."""
        files: list[File] = await self.peer.call(
            "runTests", list(filepaths), timeout=self.run_timeout
        )
        return files

    async def collect_tests(self, filepaths: Sequence[str]) -> list[File]:
        """Import ``filepaths`` and register their tests without running them."""
        files: list[File] = await self.peer.call(
            "collectTests", list(filepaths), timeout=self.run_timeout
        )
        return files

    async def eval(self, code: str) -> Any:
        return await self.peer.call("eval", code)


class FileAccessError(PermissionError):
    """The worker asked for a path outside the project root."""


@dataclass(kw_only=True)
class PoolFunctions:
    """Functions the worker runtime may call on the pool.

    File access is limited to the project root. Task trees and updates are
    remapped to original sources before they reach the reporter.
    """

    root: Path
    reporter: HostReporter
    remapper: StackRemapper | None = None
    current_file: str | None = None

    def table(self) -> Mapping[str, Callable[..., Any]]:
        """Wire names mapped to handlers."""
        return {
            "log": self.log,
            "readFile": self.read_file,
            "readFileIfExists": self.read_file_if_exists,
            "writeFile": self.write_file,
            "removeFile": self.remove_file,
            "onCollected": self.on_collected,
            "onTaskUpdate": self.on_task_update,
        }

    def log(self, *args: Any) -> None:
        worker_log.info("%s", " ".join(str(arg) for arg in args))

    async def read_file(self, path: str) -> str:
        resolved = self._resolve(path)
        return await asyncio.to_thread(resolved.read_text, encoding="utf-8")

    async def read_file_if_exists(self, path: str) -> str | None:
        resolved = self._resolve(path)
        try:
            return await asyncio.to_thread(resolved.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None

    async def write_file(self, path: str, content: str) -> None:
        resolved = self._resolve(path)
        await asyncio.to_thread(_write_text, resolved, content)
        log.debug("Wrote %s", resolved)

    async def remove_file(self, path: str) -> None:
        resolved = self._resolve(path)
        await asyncio.to_thread(resolved.unlink, missing_ok=True)
        log.debug("Removed %s", resolved)

    def on_collected(self, files: Sequence[File]) -> None:
        if self.remapper is not None:
            for file in files:
                self.remapper.remap_file(file)
        self.reporter.on_collected(files)

    def on_task_update(self, packs: Sequence[TaskUpdatePack]) -> None:
        if self.remapper is not None:
            for _, result in packs:
                self.remapper.remap_errors(
                    result.get("errors"), default_file=self.current_file
                )
        self.reporter.on_task_update(packs)

    def _resolve(self, path: str) -> Path:
        resolved = Path(path)
        if not resolved.is_absolute():
            resolved = self.root / resolved
        resolved = resolved.resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise FileAccessError(f"{path} is outside of {self.root}")
        return resolved


def _write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
