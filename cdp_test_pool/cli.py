"""CLI entry point for running test files in a remote JavaScript runtime."""

import argparse
import asyncio
import json
import logging
import re
import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from functools import partial
from pathlib import Path
from typing import Any

from cdp_test_pool.cdp.client import CdpError
from cdp_test_pool.cdp.connection import Connection
from cdp_test_pool.config import PoolConfig, load_pool_config
from cdp_test_pool.hotkeys import Hotkeys
from cdp_test_pool.models.result import FileResult
from cdp_test_pool.orchestrator import TestOrchestrator
from cdp_test_pool.pool_worker import (
    CdpPoolWorker,
    ConnectionCache,
    ConnectionLostError,
    RunMode,
    WorkerStartupError,
)
from cdp_test_pool.providers.loading import load_provider_manifest
from cdp_test_pool.reporting import STATUS_SYMBOLS, ProgressReporter, display_path
from cdp_test_pool.rpc.peer import RpcError

TEST_FILE_PATTERN = re.compile(r"\.(test|spec)\.[cm]?[jt]sx?$")
IGNORED_DIRS = frozenset({"node_modules", ".git", "dist"})
WATCH_INTERVAL = 0.5

FATAL_ERRORS = (
    ConnectionLostError,
    WorkerStartupError,
    TimeoutError,
    CdpError,
    RpcError,
)


def log_results_summary(
    log: logging.Logger, file_results: Sequence[FileResult], root: Path
) -> None:
    """Log a formatted summary of test results."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for file_result in file_results:
        log.info("%s", display_path(file_result.filepath, root))
        for test_result in file_result.results:
            symbol = STATUS_SYMBOLS.get(test_result.status, "?")
            log.info(
                "  %s %s: %s (%.3fs)",
                symbol,
                test_result.full_name,
                test_result.status,
                test_result.duration,
            )
            if test_result.message:
                for line in test_result.message.splitlines():
                    log.info("      %s", line)


def format_output(
    file_results: Sequence[FileResult], root: Path
) -> dict[str, Any]:
    """Format file results for JSON output."""
    all_results: list[dict[str, Any]] = []
    for file_result in file_results:
        for test_result in file_result.results:
            all_results.append(
                {
                    "file": display_path(file_result.filepath, root),
                    "name": test_result.full_name,
                    "status": test_result.status,
                    "duration": test_result.duration,
                    "message": test_result.message,
                    "location": test_result.location,
                }
            )

    return {
        "total": len(all_results),
        "passed": sum(1 for r in all_results if r["status"] == "pass"),
        "failed": sum(1 for r in all_results if r["status"] == "fail"),
        "skipped": sum(1 for r in all_results if r["status"] == "skip"),
        "errors": sum(1 for r in all_results if r["status"] == "error"),
        "results": all_results,
    }


def has_failures(file_results: Sequence[FileResult]) -> bool:
    """Whether any test failed or any file could not run."""
    return any(
        result.status in {"fail", "error"}
        for file_result in file_results
        for result in file_result.results
    )


def find_test_files(root: Path, paths: Sequence[str]) -> Sequence[str]:
    """Expand ``paths`` into a sorted list of absolute test file paths.

    Directories are searched recursively for ``*.test.*`` and ``*.spec.*``
    files; explicitly named files are always included.
    """
    found: set[str] = set()
    for raw in paths or (".",):
        path = Path(raw)
        if not path.is_absolute():
            path = root / path
        if path.is_file():
            found.add(str(path.resolve()))
            continue
        if not path.is_dir():
            continue
        for candidate in path.rglob("*"):
            if IGNORED_DIRS.intersection(candidate.relative_to(path).parts):
                continue
            if candidate.is_file() and TEST_FILE_PATTERN.search(candidate.name):
                found.add(str(candidate.resolve()))
    return sorted(found)


def snapshot_mtimes(filepaths: Sequence[str]) -> Mapping[str, float]:
    """Modification times of the files that still exist."""
    mtimes: dict[str, float] = {}
    for filepath in filepaths:
        try:
            mtimes[filepath] = Path(filepath).stat().st_mtime
        except OSError:
            continue
    return mtimes


async def watch_files(
    discover: Callable[[], Sequence[str]],
    on_change: Callable[[Sequence[str]], Awaitable[Any]],
    interval: float = WATCH_INTERVAL,
) -> None:
    """Call ``on_change`` with new or modified test files until cancelled."""
    log = logging.getLogger("cdp_test_pool")
    mtimes = snapshot_mtimes(discover())
    log.info("Watching %d test file(s) for changes...", len(mtimes))

    while True:
        await asyncio.sleep(interval)
        current = snapshot_mtimes(discover())
        changed = [path for path, mtime in current.items() if mtimes.get(path) != mtime]
        mtimes = current
        if changed:
            log.info("Change detected in %d file(s)", len(changed))
            await on_change(changed)


def parse_key_value(value: str) -> tuple[str, str]:
    """Parse a ``KEY=VALUE`` command line argument."""
    key, sep, rest = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {value!r}")
    return key, rest


def build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate command line flags into configuration overrides."""
    overrides: dict[str, Any] = {}
    bundler: dict[str, Any] = {}
    runner: dict[str, Any] = {}

    if args.root is not None:
        overrides["root"] = str(args.root.resolve())
    if args.rpc_timeout is not None:
        overrides["rpc_timeout"] = args.rpc_timeout
    if args.connection_timeout is not None:
        overrides["connection_timeout"] = args.connection_timeout
    if args.transport is not None:
        overrides["transport"] = args.transport
    if args.before_tests is not None:
        overrides["before_tests"] = args.before_tests
    if args.no_error_sourcemapping:
        overrides["error_sourcemapping"] = False
    if args.show_bundled_stack:
        overrides["show_bundled_stack"] = True
    if args.no_reuse_connection:
        overrides["reuse_connection"] = False
    if args.hotkeys:
        overrides["hotkeys"] = {"enabled": True}

    if args.external:
        bundler["externals"] = list(args.external)
    if args.define:
        bundler["define"] = dict(args.define)
    if args.alias:
        bundler["alias"] = dict(args.alias)
    if args.test_name_pattern is not None:
        runner["test_name_pattern"] = args.test_name_pattern
    if args.update_snapshots:
        runner["update_snapshot"] = "all"

    if bundler:
        overrides["bundler"] = bundler
    if runner:
        overrides["runner"] = runner
    return overrides


async def run(
    provider_key: str,
    provider_config_json: str,
    config: PoolConfig,
    paths: Sequence[str] = (),
    *,
    collect: bool = False,
    watch: bool = False,
) -> int:
    """Run test files and return exit code."""
    log = logging.getLogger("cdp_test_pool")

    log.info("Loading provider: %s", provider_key)
    manifest = load_provider_manifest(provider_key)

    config_dict = json.loads(provider_config_json)
    provider_config = manifest.config_cls(**config_dict)

    filepaths = find_test_files(config.root, paths)
    if not filepaths and not watch:
        log.info("No test files found")
        print(json.dumps({"total": 0, "results": []}))
        return 0 if config.runner.pass_with_no_tests else 1

    mode: RunMode = "collect" if collect else "run"
    reporter = ProgressReporter(root=config.root)
    cache = ConnectionCache()
    active: CdpPoolWorker | None = None

    def current_connection() -> Connection | None:
        if active is not None and active.connection is not None:
            return active.connection
        return cache.get()

    async with manifest.provider_factory(provider_config) as provider:
        connect = partial(
            provider.connect,
            timeout=config.connection_timeout,
            enable_domains=config.enable_domains,
        )

        async def run_once(files: Sequence[str]) -> int:
            nonlocal active
            active = CdpPoolWorker(
                config=config, connect=connect, reporter=reporter, cache=cache
            )
            orchestrator = TestOrchestrator(pool=active, root=config.root)
            try:
                file_results = await orchestrator.run_tests(files, mode)
            finally:
                active = None

            log_results_summary(log, file_results, config.root)
            output = format_output(file_results, config.root)
            print(json.dumps(output, indent=2))
            return 1 if has_failures(file_results) else 0

        async def rerun(files: Sequence[str]) -> None:
            try:
                await run_once(files)
            except FATAL_ERRORS as exc:
                log.error("Test run aborted: %s", exc)

        hotkeys = Hotkeys(config=config.hotkeys, get_connection=current_connection)
        hotkeys.install()
        try:
            exit_code = 0
            if filepaths:
                exit_code = await run_once(filepaths)
            if watch:
                await watch_files(partial(find_test_files, config.root, paths), rerun)
        except FATAL_ERRORS as exc:
            log.error("Test run aborted: %s", exc)
            return 2
        finally:
            hotkeys.uninstall()
            await cache.close()

    return exit_code


def build_parser() -> argparse.ArgumentParser:
    """Command line interface definition."""
    parser = argparse.ArgumentParser(
        description="Run JavaScript test files inside a remote runtime over CDP"
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Test files or directories (default: the project root)",
    )
    parser.add_argument(
        "--endpoint-provider",
        required=True,
        help="Endpoint provider key (websocket, chrome)",
    )
    parser.add_argument(
        "--endpoint-config",
        default="{}",
        help="JSON configuration for the endpoint provider",
    )
    parser.add_argument(
        "--root",
        type=Path,
        help="Project root used for bundling and file access (default: cwd)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="JSON file with pool settings; command line flags take precedence",
    )
    parser.add_argument(
        "--collect",
        action="store_true",
        help="Only collect tests without running them",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Re-run changed test files until interrupted",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--rpc-timeout", type=float, help="RPC call timeout (s)")
    parser.add_argument(
        "--connection-timeout", type=float, help="Connection timeout (s)"
    )
    parser.add_argument(
        "--transport",
        choices=("auto", "binding", "console"),
        help="Channel used by the remote runtime to reach the pool",
    )
    parser.add_argument(
        "--external",
        action="append",
        default=[],
        help="Module left unbundled (repeatable)",
    )
    parser.add_argument(
        "--define",
        action="append",
        type=parse_key_value,
        default=[],
        metavar="K=V",
        help="Global constant replaced at bundle time (repeatable)",
    )
    parser.add_argument(
        "--alias",
        action="append",
        type=parse_key_value,
        default=[],
        metavar="A=B",
        help="Module alias applied at bundle time (repeatable)",
    )
    parser.add_argument(
        "--test-name-pattern",
        help="Only run tests whose full name matches this regular expression",
    )
    parser.add_argument(
        "--update-snapshots",
        action="store_true",
        help="Rewrite snapshots that do not match",
    )
    parser.add_argument(
        "--no-error-sourcemapping",
        action="store_true",
        help="Report stack traces against the bundled code",
    )
    parser.add_argument(
        "--show-bundled-stack",
        action="store_true",
        help="Append the original bundled stack to remapped errors",
    )
    parser.add_argument(
        "--no-reuse-connection",
        action="store_true",
        help="Open a new connection for every run",
    )
    parser.add_argument(
        "--hotkeys",
        action="store_true",
        help='Enable interactive keys ("d" opens Chrome DevTools)',
    )
    parser.add_argument(
        "--before-tests",
        help="Expression evaluated in the remote context before tests run",
    )

    return parser


def main() -> None:
    """CLI entry point."""
    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    config = load_pool_config(args.config, build_overrides(args))

    try:
        exit_code = asyncio.run(
            run(
                provider_key=args.endpoint_provider,
                provider_config_json=args.endpoint_config,
                config=config,
                paths=args.paths,
                collect=args.collect,
                watch=args.watch,
            )
        )
    except KeyboardInterrupt:
        exit_code = 130
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()
