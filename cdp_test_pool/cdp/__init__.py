"""Chrome DevTools Protocol client, connection setup and evaluation."""

from cdp_test_pool.cdp.client import (
    CdpClient,
    CdpConnectionClosedError,
    CdpError,
    CdpEvent,
    CdpProtocolError,
)
from cdp_test_pool.cdp.connection import (
    Connection,
    ConnectionTimeoutError,
    ExecutionContext,
    connect,
)
from cdp_test_pool.cdp.evaluate import (
    PromiseCollectedError,
    PromiseTimeoutError,
    RemoteEvaluationError,
    evaluate,
    poll_until_settled,
)

__all__ = [
    "CdpClient",
    "CdpConnectionClosedError",
    "CdpError",
    "CdpEvent",
    "CdpProtocolError",
    "Connection",
    "ConnectionTimeoutError",
    "ExecutionContext",
    "PromiseCollectedError",
    "PromiseTimeoutError",
    "RemoteEvaluationError",
    "connect",
    "evaluate",
    "poll_until_settled",
]
