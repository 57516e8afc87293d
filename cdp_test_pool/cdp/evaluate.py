"""Expression evaluation and remote promise resolution.

Some embedders do not honour ``awaitPromise``. For those, the promise is
kept alive in an object group and its internal ``[[PromiseState]]`` is
polled until it settles.
"""

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, TypeAlias, TypeVar

from cdp_test_pool.cdp.client import CdpError, CdpProtocolError
from cdp_test_pool.cdp.connection import Connection
from cdp_test_pool.config import PollPolicy

log = logging.getLogger(__name__)

OBJECT_GROUP = "cdp-test-pool"
RETURN_THIS = "function () { return this; }"

UNSERIALIZABLE_VALUES: Mapping[str, float] = {
    "NaN": math.nan,
    "Infinity": math.inf,
    "-Infinity": -math.inf,
    "-0": -0.0,
}

RemoteObject: TypeAlias = Mapping[str, Any]


class RemoteEvaluationError(RuntimeError):
    """The remote expression threw or its promise rejected."""

    def __init__(self, message: str, details: Mapping[str, Any] | None = None):
        super().__init__(message)
        self.details = details or {}

    @classmethod
    def from_exception_details(
        cls, details: Mapping[str, Any]
    ) -> "RemoteEvaluationError":
        """Build from the ``exceptionDetails`` of an evaluation result."""
        exception = details.get("exception") or {}
        message = (
            exception.get("description")
            or exception.get("value")
            or details.get("text")
            or "Remote evaluation failed"
        )
        return cls(str(message), details)

    @classmethod
    def from_rejection(cls, reason: RemoteObject) -> "RemoteEvaluationError":
        """Build from the ``[[PromiseResult]]`` of a rejected promise."""
        message = reason.get("description") or reason.get("value") or "rejected"
        return cls(f"Promise rejected: {message}", {"exception": reason})


class PromiseCollectedError(RuntimeError):
    """The polled promise no longer exists in the remote heap."""


class PromiseTimeoutError(TimeoutError):
    """The polled promise did not settle within the policy timeout."""


T = TypeVar("T")


async def poll_until_settled(
    inspect: Callable[[], Awaitable[T | None]],
    policy: PollPolicy,
) -> T:
    """Call ``inspect`` until it returns a value other than ``None``.

    Errors raised by ``inspect`` propagate unchanged.

    Raises:
        PromiseTimeoutError: If ``policy.timeout`` elapses first

    """
    loop = asyncio.get_running_loop()
    deadline = None if policy.timeout is None else loop.time() + policy.timeout
    interval = policy.initial_interval

    while True:
        if (result := await inspect()) is not None:
            return result

        delay = interval
        if deadline is not None:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PromiseTimeoutError(
                    f"Promise did not settle within {policy.timeout} seconds"
                )
            delay = min(delay, remaining)

        await asyncio.sleep(delay)
        interval = min(interval * policy.backoff_factor, policy.max_interval)


async def evaluate(
    connection: Connection,
    expression: str,
    *,
    await_promise: bool = False,
    poll_policy: PollPolicy | None = None,
) -> Any:
    """Evaluate ``expression`` in the connection's context and return its value.

    With ``await_promise`` the value of a returned promise is awaited,
    natively when no ``poll_policy`` is given and by polling otherwise.

    Raises:
        RemoteEvaluationError: If the expression throws or the promise rejects
        PromiseCollectedError: If a polled promise is garbage collected
        PromiseTimeoutError: If polling exceeds the policy timeout

    """
    params: dict[str, Any] = {
        "expression": expression,
        "returnByValue": True,
        **connection.context_target(),
    }
    if not await_promise or poll_policy is None:
        if await_promise:
            params["awaitPromise"] = True
        response = await connection.send("Runtime.evaluate", params)
        return value_of(_checked(response))

    params["returnByValue"] = False
    params["objectGroup"] = OBJECT_GROUP
    try:
        response = await connection.send("Runtime.evaluate", params)
        remote = _checked(response)
        if remote.get("subtype") == "promise":
            remote = await await_remote_promise(
                connection, remote["objectId"], poll_policy
            )
        return await fetch_value(connection, remote)
    finally:
        await release_object_group(connection)


async def await_remote_promise(
    connection: Connection,
    object_id: str,
    policy: PollPolicy,
) -> RemoteObject:
    """Poll a promise handle until it settles and return the settled value.

    Raises:
        RemoteEvaluationError: If the promise rejects
        PromiseCollectedError: If the handle stops resolving
        PromiseTimeoutError: If the policy timeout elapses

    """

    async def inspect() -> RemoteObject | None:
        try:
            response = await connection.send(
                "Runtime.getProperties",
                {"objectId": object_id, "ownProperties": True},
            )
        except CdpProtocolError as exc:
            raise PromiseCollectedError(
                f"Promise {object_id} is no longer available: {exc}"
            ) from exc

        internal = {
            prop["name"]: prop.get("value") or {}
            for prop in response.get("internalProperties", ())
        }
        state = internal.get("[[PromiseState]]", {}).get("value")
        if state is None:
            raise PromiseCollectedError(f"Object {object_id} is not a promise")
        if state == "pending":
            return None

        settled: RemoteObject = internal.get("[[PromiseResult]]") or {
            "type": "undefined"
        }
        if state == "rejected":
            raise RemoteEvaluationError.from_rejection(settled)
        return settled

    return await poll_until_settled(inspect, policy)


async def fetch_value(connection: Connection, remote: RemoteObject) -> Any:
    """Return the JSON value of a remote object, fetching it when needed."""
    object_id = remote.get("objectId")
    if object_id is None or "value" in remote:
        return value_of(remote)
    response = await connection.send(
        "Runtime.callFunctionOn",
        {
            "objectId": object_id,
            "functionDeclaration": RETURN_THIS,
            "returnByValue": True,
        },
    )
    return value_of(_checked(response))


async def release_object_group(connection: Connection) -> None:
    """Release handles kept for polling; failures are only logged."""
    try:
        await connection.send(
            "Runtime.releaseObjectGroup", {"objectGroup": OBJECT_GROUP}
        )
    except CdpError as exc:
        log.debug("Could not release object group %s: %s", OBJECT_GROUP, exc)


def value_of(remote: RemoteObject) -> Any:
    """Convert a by-value ``RemoteObject`` to a Python value."""
    if "value" in remote:
        return remote["value"]
    unserializable = remote.get("unserializableValue")
    if unserializable is not None:
        if unserializable.endswith("n"):
            return int(unserializable[:-1])
        return UNSERIALIZABLE_VALUES[unserializable]
    return None


def _checked(response: Mapping[str, Any]) -> RemoteObject:
    if details := response.get("exceptionDetails"):
        raise RemoteEvaluationError.from_exception_details(details)
    result: RemoteObject = response.get("result", {})
    return result
