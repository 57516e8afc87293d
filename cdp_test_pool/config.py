"""Configuration of the pool, the bundler and the remote runner."""

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal, TypeAlias

from pydantic import Field

from cdp_test_pool.models.base import Model

log = logging.getLogger(__name__)

Transport: TypeAlias = Literal["auto", "binding", "console"]
AwaitMode: TypeAlias = Literal["poll", "native"]
SnapshotUpdateMode: TypeAlias = Literal["new", "all", "none"]


class PollPolicy(Model):
    """Backoff schedule for polling remote promise state.

    The first check happens immediately; waits then grow by
    ``backoff_factor`` up to ``max_interval``. ``timeout`` bounds the whole
    wait when set.
    """

    initial_interval: float = Field(default=0.05, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1)
    max_interval: float = Field(default=1.0, gt=0)
    timeout: float | None = Field(default=None, gt=0)


class BundlerConfig(Model):
    """Options passed to esbuild."""

    esbuild: str = "esbuild"
    target: str = "es2022"
    externals: tuple[str, ...] = ()
    define: Mapping[str, str] = Field(default_factory=dict)
    alias: Mapping[str, str] = Field(default_factory=dict)
    loader: Mapping[str, str] = Field(default_factory=dict)
    api_modules: tuple[str, ...] = ("vitest",)
    embed_sourcemap: bool = False
    extra_args: tuple[str, ...] = ()
    out_dir: str = "node_modules/.cdp-test-pool"


class RunnerConfig(Model):
    """Settings forwarded to the worker runtime with ``setConfig``."""

    test_timeout: int = Field(default=5000, ge=0)
    hook_timeout: int = Field(default=10000, ge=0)
    retry: int = Field(default=0, ge=0)
    test_name_pattern: str | None = None
    allow_only: bool = True
    pass_with_no_tests: bool = False
    update_snapshot: SnapshotUpdateMode = "new"

    def to_worker_config(self, root: Path) -> dict[str, Any]:
        """Build the payload understood by the remote runner."""
        return {
            "root": str(root),
            "testTimeout": self.test_timeout,
            "hookTimeout": self.hook_timeout,
            "retry": self.retry,
            "testNamePattern": self.test_name_pattern,
            "allowOnly": self.allow_only,
            "passWithNoTests": self.pass_with_no_tests,
            "updateSnapshot": self.update_snapshot,
        }


class HotkeyConfig(Model):
    """Interactive keys available while the pool is running."""

    enabled: bool = False
    chrome_executable: str | None = None


class PoolConfig(Model):
    """Top-level configuration of one pool worker."""

    root: Path = Field(default_factory=Path.cwd)
    transport: Transport = "auto"
    rpc_timeout: float = Field(default=30.0, gt=0)
    run_timeout: float = Field(default=600.0, gt=0)
    connection_timeout: float = Field(default=10.0, gt=0)
    max_consecutive_timeouts: int = Field(default=3, ge=1)
    reuse_connection: bool = True
    error_sourcemapping: bool = True
    show_bundled_stack: bool = False
    filter_runtime_frames: bool = True
    before_tests: str | None = None
    await_mode: AwaitMode = "poll"
    promise_polling: PollPolicy = Field(default_factory=PollPolicy)
    enable_domains: tuple[str, ...] = ("Runtime",)
    bundler: BundlerConfig = Field(default_factory=BundlerConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    hotkeys: HotkeyConfig = Field(default_factory=HotkeyConfig)


def merge_settings(
    base: Mapping[str, Any], overrides: Mapping[str, Any]
) -> dict[str, Any]:
    """Recursively merge ``overrides`` into ``base``.

    Nested mappings are merged key by key; any other value in ``overrides``
    replaces the one in ``base``.
    """
    merged = dict(base)
    for key, value in overrides.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_settings(current, value)
        else:
            merged[key] = value
    return merged


def load_pool_config(
    config_file: Path | None, overrides: Mapping[str, Any]
) -> PoolConfig:
    """Read an optional JSON config file and apply command line overrides.

    Raises:
        FileNotFoundError: If ``config_file`` does not exist
        ValueError: If the file is not a JSON object
        pydantic.ValidationError: If the merged settings are invalid

    """
    settings: dict[str, Any] = {}
    if config_file is not None:
        log.debug("Loading configuration from %s", config_file)
        data = json.loads(config_file.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{config_file} must contain a JSON object")
        settings = data
    return PoolConfig.model_validate(merge_settings(settings, overrides))
