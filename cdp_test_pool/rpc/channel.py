"""Carry RPC envelopes between the pool and the worker runtime over CDP.

Pool to worker: ``Runtime.evaluate`` of the runtime's receive function with
the payload as a string literal. Worker to pool: ``Runtime.bindingCalled``
for the runtime binding, or ``console.debug(tag, payload)`` surfacing as
``Runtime.consoleAPICalled`` when bindings are unavailable.
"""

import json
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from cdp_test_pool.cdp.client import CdpEvent, CdpProtocolError
from cdp_test_pool.cdp.connection import Connection
from cdp_test_pool.cdp.evaluate import evaluate
from cdp_test_pool.config import Transport
from cdp_test_pool.worker import BINDING_NAME, MESSAGE_TAG, RECEIVE_FUNCTION

log = logging.getLogger(__name__)
remote_log = logging.getLogger("cdp_test_pool.remote")

CONSOLE_LEVELS: Mapping[str, int] = {
    "error": logging.ERROR,
    "assert": logging.ERROR,
    "warning": logging.WARNING,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def describe_remote_object(remote: Mapping[str, Any]) -> str:
    """Render a console argument the way DevTools would, roughly."""
    if "value" in remote:
        value = remote["value"]
        return value if isinstance(value, str) else json.dumps(value)
    if "unserializableValue" in remote:
        return str(remote["unserializableValue"])
    if "description" in remote:
        return str(remote["description"])
    return str(remote.get("type", "undefined"))


def format_console_args(args: Sequence[Mapping[str, Any]]) -> str:
    """Join console arguments with spaces."""
    return " ".join(describe_remote_object(arg) for arg in args)


def forward_console_event(event: CdpEvent) -> None:
    """Log untagged remote console output to ``cdp_test_pool.remote``."""
    level = CONSOLE_LEVELS.get(event.params.get("type", "log"), logging.INFO)
    remote_log.log(level, "%s", format_console_args(event.params.get("args", ())))


def forward_exception_event(event: CdpEvent) -> None:
    """Log uncaught remote exceptions to ``cdp_test_pool.remote``."""
    details = event.params.get("exceptionDetails", {})
    exception = details.get("exception") or {}
    remote_log.error(
        "Uncaught exception: %s",
        exception.get("description") or details.get("text", "unknown error"),
    )


@dataclass(kw_only=True, eq=False)
class CdpChannel:
    """Worker-to-pool listener plus pool-to-worker delivery on one connection.

    Both inbound channels are always listened to; ``transport`` only decides
    whether the binding is installed. Tagged console messages never reach
    ``on_console``.
    """

    connection: Connection
    on_payload: Callable[[str], None]
    on_console: Callable[[CdpEvent], None] | None = forward_console_event
    transport: Transport = "auto"
    active_transport: str | None = None

    async def open(self) -> str:
        """Subscribe to events and install the binding when requested.

        Returns:
            The transport the worker is expected to use

        Raises:
            CdpProtocolError: If ``transport`` is ``binding`` and
                ``Runtime.addBinding`` fails

        """
        client = self.connection.client
        client.on("Runtime.bindingCalled", self._on_binding_called)
        client.on("Runtime.consoleAPICalled", self._on_console_called)
        client.on("Runtime.exceptionThrown", forward_exception_event)

        active = "console"
        if self.transport != "console":
            try:
                await self.connection.send("Runtime.addBinding", {"name": BINDING_NAME})
            except CdpProtocolError as exc:
                if self.transport == "binding":
                    self.close()
                    raise
                log.info("Bindings unavailable (%s), using console channel", exc)
            else:
                active = "binding"

        self.active_transport = active
        log.debug("Worker channel open using %s transport", active)
        return active

    def close(self) -> None:
        """Unsubscribe from the connection's events."""
        client = self.connection.client
        client.off("Runtime.bindingCalled", self._on_binding_called)
        client.off("Runtime.consoleAPICalled", self._on_console_called)
        client.off("Runtime.exceptionThrown", forward_exception_event)

    async def post(self, payload: str) -> None:
        """Deliver one envelope to the worker runtime without awaiting it."""
        expression = f"globalThis.{RECEIVE_FUNCTION}({json.dumps(payload)})"
        await evaluate(self.connection, expression)

    def _on_binding_called(self, event: CdpEvent) -> None:
        if event.params.get("name") != BINDING_NAME:
            return
        if not self._is_own_context(event):
            return
        self.on_payload(event.params.get("payload", ""))

    def _on_console_called(self, event: CdpEvent) -> None:
        if not self._is_own_context(event):
            return
        args = event.params.get("args", ())
        if (
            event.params.get("type") == "debug"
            and len(args) >= 2
            and args[0].get("value") == MESSAGE_TAG
        ):
            self.on_payload(args[1].get("value", ""))
            return
        if self.on_console is not None:
            self.on_console(event)

    def _is_own_context(self, event: CdpEvent) -> bool:
        if event.session_id != self.connection.session_id:
            return False
        context_id = event.params.get("executionContextId")
        return context_id is None or context_id == self.connection.context.id
