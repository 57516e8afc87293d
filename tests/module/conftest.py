"""Fixtures for module tests against a real headless Chrome and esbuild."""

import asyncio
import os
import shutil
import socket
from collections.abc import AsyncGenerator
from pathlib import Path

import aiohttp
import pytest

CHROME_CANDIDATES = (
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
)


def find_chrome() -> str | None:
    """Path of a Chrome executable, preferring $CHROME_BIN."""
    if configured := os.environ.get("CHROME_BIN"):
        return configured
    for name in CHROME_CANDIDATES:
        if path := shutil.which(name):
            return path
    return None


def free_port() -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port: int = sock.getsockname()[1]
        return port


@pytest.fixture
def esbuild() -> str:
    """esbuild executable; skips the test when it is missing."""
    path = os.environ.get("ESBUILD_BIN") or shutil.which("esbuild")
    if path is None:
        pytest.skip("esbuild not installed")
    return path


@pytest.fixture
async def chrome_port(tmp_path: Path) -> AsyncGenerator[int, None]:
    """Start headless Chrome with remote debugging and yield its port."""
    executable = find_chrome()
    if executable is None:
        pytest.skip("Chrome not installed")

    port = free_port()
    process = await asyncio.create_subprocess_exec(
        executable,
        "--headless=new",
        "--no-sandbox",
        "--disable-gpu",
        "--no-first-run",
        f"--remote-debugging-port={port}",
        f"--user-data-dir={tmp_path / 'chrome-profile'}",
        "about:blank",
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        await wait_for_devtools(port)
        yield port
    finally:
        process.terminate()
        await process.wait()


async def wait_for_devtools(port: int, timeout: float = 15.0) -> None:
    """Wait until the DevTools HTTP endpoint answers."""
    async with aiohttp.ClientSession() as session:
        async with asyncio.timeout(timeout):
            while True:
                try:
                    async with session.get(
                        f"http://127.0.0.1:{port}/json/version"
                    ) as response:
                        if response.status == 200:
                            return
                except aiohttp.ClientError:
                    pass
                await asyncio.sleep(0.1)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Project with a passing and a failing test file."""
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "src" / "math.js").write_text(
        "export function add(a, b) {\n  return a + b;\n}\n"
    )
    (root / "src" / "math.test.js").write_text(
        'import { describe, it, expect } from "vitest";\n'
        'import { add } from "./math.js";\n'
        "\n"
        'describe("add", () => {\n'
        '  it("adds numbers", () => {\n'
        "    expect(add(1, 2)).toBe(3);\n"
        "  });\n"
        "\n"
        '  it("waits for promises", async () => {\n'
        "    const value = await Promise.resolve(add(2, 2));\n"
        "    expect(value).toEqual(4);\n"
        "  });\n"
        "\n"
        '  it.skip("is skipped", () => {});\n'
        "});\n"
    )
    (root / "src" / "broken.test.js").write_text(
        'import { it, expect } from "vitest";\n'
        "\n"
        'it("fails", () => {\n'
        "  expect(1 + 1).toBe(3);\n"
        "});\n"
    )
    return root
