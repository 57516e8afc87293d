"""Interactive hotkeys: ``d`` opens a DevTools front-end on the connection."""

import asyncio
import logging
import os
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

from yarl import URL

from cdp_test_pool.cdp.connection import Connection
from cdp_test_pool.config import HotkeyConfig

log = logging.getLogger(__name__)

DEVTOOLS_FRONTEND = URL("devtools://devtools/bundled/inspector.html")
DEVTOOLS_KEY = "d"


def devtools_url(ws_url: str) -> str:
    """DevTools front-end URL attached to the CDP WebSocket ``ws_url``."""
    target = URL(ws_url)
    param = "wss" if target.scheme == "wss" else "ws"
    address = f"{target.raw_authority}{target.raw_path_qs}"
    return str(DEVTOOLS_FRONTEND.with_query({param: address}))


def chrome_command(chrome_executable: str | None = None) -> Sequence[str]:
    """Command prefix that opens a URL in Chrome on this platform."""
    if chrome_executable:
        return [chrome_executable]
    match sys.platform:
        case "darwin":
            return ["open", "-a", "Google Chrome"]
        case "win32":
            return ["cmd", "/c", "start", "chrome"]
        case _:
            return ["google-chrome"]


async def open_devtools_session(
    ws_url: str, chrome_executable: str | None = None
) -> None:
    """Open Chrome DevTools on ``ws_url``.

    Raises:
        RuntimeError: If Chrome cannot be launched or exits with an error

    """
    url = devtools_url(ws_url)
    command = [*chrome_command(chrome_executable), url]
    log.info("Opening DevTools: %s", url)
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise RuntimeError(f"Failed to launch Chrome: {exc}") from exc
    _, stderr = await process.communicate()

    if process.returncode != 0:
        raise RuntimeError(
            f"Failed to open DevTools session: {stderr.decode().strip()}"
        )


@dataclass(kw_only=True)
class Hotkeys:
    """Reads single keys from a terminal while tests run."""

    config: HotkeyConfig
    get_connection: Callable[[], Connection | None]
    _restore: Callable[[], None] | None = field(default=None, repr=False)
    _opening: asyncio.Task[None] | None = field(default=None, repr=False)

    def install(self) -> bool:
        """Start listening on stdin; returns False when that is impossible."""
        if not self.config.enabled:
            return False
        if not sys.stdin.isatty():
            log.info("Hotkeys enabled, but stdin is not a TTY")
            return False
        if sys.platform == "win32":
            log.info("Hotkeys are not supported on Windows")
            return False

        import termios
        import tty

        loop = asyncio.get_running_loop()
        fd = sys.stdin.fileno()
        previous = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        loop.add_reader(fd, self._on_readable, fd)

        def restore() -> None:
            loop.remove_reader(fd)
            termios.tcsetattr(fd, termios.TCSADRAIN, previous)

        self._restore = restore
        log.info('Hotkeys enabled: press "%s" to open Chrome DevTools', DEVTOOLS_KEY)
        return True

    def uninstall(self) -> None:
        """Give the terminal back."""
        if self._restore is not None:
            self._restore()
            self._restore = None

    def handle_input(self, text: str) -> None:
        """React to characters typed by the user."""
        if DEVTOOLS_KEY in text:
            self.open_devtools()

    def open_devtools(self) -> None:
        """Open DevTools for the current connection unless already opening."""
        if self._opening is not None and not self._opening.done():
            return
        connection = self.get_connection()
        if connection is None:
            log.warning("Could not open DevTools: not connected")
            return
        self._opening = asyncio.get_running_loop().create_task(
            open_devtools_session(connection.url, self.config.chrome_executable)
        )
        self._opening.add_done_callback(_log_failure)

    def _on_readable(self, fd: int) -> None:
        self.handle_input(os.read(fd, 64).decode(errors="ignore"))


def _log_failure(task: asyncio.Task[None]) -> None:
    if not task.cancelled() and (exc := task.exception()) is not None:
        log.error("Failed to open DevTools: %s", exc)
