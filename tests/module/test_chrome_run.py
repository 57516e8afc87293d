"""Module tests running real test files in headless Chrome."""

import json
from pathlib import Path
from typing import Any

import pytest

from cdp_test_pool.cli import run
from cdp_test_pool.config import PoolConfig


async def run_project(
    project: Path,
    chrome_port: int,
    esbuild: str,
    paths: list[str],
    capsys: pytest.CaptureFixture[str],
    **settings: Any,
) -> tuple[int, dict[str, dict[str, Any]]]:
    """Run the CLI and index the reported results by full test name."""
    config = PoolConfig.model_validate(
        {"root": str(project), "bundler": {"esbuild": esbuild}, **settings}
    )
    exit_code = await run(
        provider_key="chrome",
        provider_config_json=json.dumps({"port": chrome_port}),
        config=config,
        paths=paths,
    )
    output = json.loads(capsys.readouterr().out)
    return exit_code, {result["name"]: result for result in output["results"]}


async def test_passing_file(
    project: Path,
    chrome_port: int,
    esbuild: str,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Passing and skipped tests are reported and the run succeeds."""
    exit_code, results = await run_project(
        project, chrome_port, esbuild, ["src/math.test.js"], capsys
    )

    assert exit_code == 0
    assert results["add > adds numbers"]["status"] == "pass"
    assert results["add > waits for promises"]["status"] == "pass"
    assert results["add > is skipped"]["status"] == "skip"
    assert results["add > adds numbers"]["file"] == "src/math.test.js"


async def test_failing_file_points_at_source(
    project: Path,
    chrome_port: int,
    esbuild: str,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Failures are reported against the original source file."""
    exit_code, results = await run_project(
        project, chrome_port, esbuild, ["src"], capsys
    )

    assert exit_code == 1
    failure = results["fails"]
    assert failure["status"] == "fail"
    assert "expected 2 to be 3" in failure["message"]
    assert "broken.test.js:4:" in failure["message"]
    assert results["add > adds numbers"]["status"] == "pass"


async def test_collect_only(
    project: Path,
    chrome_port: int,
    esbuild: str,
    capsys: pytest.CaptureFixture[str],
) -> None:
    """Collecting registers tests without running them."""
    config = PoolConfig.model_validate(
        {"root": str(project), "bundler": {"esbuild": esbuild}}
    )

    exit_code = await run(
        provider_key="chrome",
        provider_config_json=json.dumps({"port": chrome_port}),
        config=config,
        paths=["src/broken.test.js"],
        collect=True,
    )

    output = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert [result["status"] for result in output["results"]] == ["collected"]
