"""Tests for the pool and worker function tables."""

import logging
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, Mock

import pytest

from cdp_test_pool.remapper import StackRemapper
from cdp_test_pool.reporting import HostReporter
from cdp_test_pool.rpc.functions import FileAccessError, PoolFunctions, WorkerClient
from cdp_test_pool.rpc.peer import RpcPeer


@pytest.fixture
def reporter() -> Mock:
    """Mock host reporter."""
    return Mock(spec=HostReporter)


@pytest.fixture
def remapper() -> Mock:
    """Mock stack remapper."""
    return Mock(spec=StackRemapper)


@pytest.fixture
def functions(tmp_path: Path, reporter: Mock, remapper: Mock) -> PoolFunctions:
    """Pool functions rooted at a temporary directory."""
    return PoolFunctions(root=tmp_path, reporter=reporter, remapper=remapper)


def test_table_uses_wire_names(functions: PoolFunctions) -> None:
    """Handlers are exposed under the runtime's camelCase names."""
    assert set(functions.table()) == {
        "log",
        "readFile",
        "readFileIfExists",
        "writeFile",
        "removeFile",
        "onCollected",
        "onTaskUpdate",
    }


def test_log_forwards_to_worker_logger(
    functions: PoolFunctions, caplog: pytest.LogCaptureFixture
) -> None:
    """Worker log calls are joined and logged."""
    with caplog.at_level(logging.INFO, logger="cdp_test_pool.worker"):
        functions.log("snapshot", "written", 2)

    assert "snapshot written 2" in caplog.text


class TestFileAccess:
    """Tests for file system functions."""

    async def test_write_then_read(
        self, functions: PoolFunctions, tmp_path: Path
    ) -> None:
        """Files are written below the root, creating directories."""
        await functions.write_file("__snapshots__/a.test.ts.snap", "exports = {}")

        assert (tmp_path / "__snapshots__" / "a.test.ts.snap").read_text() == (
            "exports = {}"
        )
        assert await functions.read_file("__snapshots__/a.test.ts.snap") == (
            "exports = {}"
        )

    async def test_read_missing_file(self, functions: PoolFunctions) -> None:
        """readFile raises for missing files, readFileIfExists returns None."""
        with pytest.raises(FileNotFoundError):
            await functions.read_file("missing.snap")

        assert await functions.read_file_if_exists("missing.snap") is None

    async def test_remove_file(self, functions: PoolFunctions, tmp_path: Path) -> None:
        """Files are removed; missing files are ignored."""
        target = tmp_path / "old.snap"
        target.write_text("x")

        await functions.remove_file(str(target))
        await functions.remove_file(str(target))

        assert not target.exists()

    @pytest.mark.parametrize("path", ["../outside.txt", "/etc/passwd"])
    async def test_rejects_paths_outside_root(
        self, functions: PoolFunctions, path: str
    ) -> None:
        """Paths escaping the project root are refused."""
        with pytest.raises(FileAccessError, match="outside of"):
            await functions.read_file(path)


class TestReporting:
    """Tests for reporter callbacks."""

    def test_on_collected_remaps_before_reporting(
        self, functions: PoolFunctions, reporter: Mock, remapper: Mock
    ) -> None:
        """Collected trees are remapped, then reported."""
        file: dict[str, Any] = {"filepath": "/b.js", "tasks": []}

        functions.on_collected([file])

        remapper.remap_file.assert_called_once_with(file)
        reporter.on_collected.assert_called_once_with([file])

    def test_on_task_update_remaps_errors(
        self, functions: PoolFunctions, reporter: Mock, remapper: Mock
    ) -> None:
        """Update errors are remapped against the current file."""
        functions.current_file = "/b.js"
        errors = [{"name": "Error", "message": "x", "stack": "Error: x"}]
        packs = [("1_0", {"status": "fail", "errors": errors})]

        functions.on_task_update(packs)

        remapper.remap_errors.assert_called_once_with(errors, default_file="/b.js")
        reporter.on_task_update.assert_called_once_with(packs)

    def test_reports_without_remapper(self, tmp_path: Path, reporter: Mock) -> None:
        """Reporting works when source mapping is disabled."""
        functions = PoolFunctions(root=tmp_path, reporter=reporter)

        functions.on_task_update([("1_0", {"status": "pass"})])

        reporter.on_task_update.assert_called_once()


class TestWorkerClient:
    """Tests for WorkerClient."""

    async def test_run_tests_uses_run_timeout(self) -> None:
        """Long-running calls use the run timeout."""
        peer = Mock(spec=RpcPeer)
        peer.call = AsyncMock(return_value=[])
        client = WorkerClient(peer=peer, run_timeout=120)

        await client.run_tests(["/b.js"])
        await client.collect_tests(["/b.js"])

        peer.call.assert_any_await("runTests", ["/b.js"], timeout=120)
        peer.call.assert_any_await("collectTests", ["/b.js"], timeout=120)

    async def test_short_calls_use_default_timeout(self) -> None:
        """Other calls rely on the peer's default timeout."""
        peer = Mock(spec=RpcPeer)
        peer.call = AsyncMock(return_value="pong")
        client = WorkerClient(peer=peer)

        assert await client.ping() == "pong"
        await client.set_config({"retry": 1})
        await client.set_bundled_code("/b.js", "code")

        assert peer.call.await_args_list[1].args == ("setConfig", {"retry": 1})
        assert peer.call.await_args_list[2].args == ("setBundledCode", "/b.js", "code")
