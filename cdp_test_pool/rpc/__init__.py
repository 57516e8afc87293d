"""RPC between the pool and the remote worker runtime."""

from cdp_test_pool.rpc.channel import CdpChannel
from cdp_test_pool.rpc.functions import FileAccessError, PoolFunctions, WorkerClient
from cdp_test_pool.rpc.peer import (
    RpcClosedError,
    RpcError,
    RpcPeer,
    RpcRemoteError,
    RpcTimeoutError,
)

__all__ = [
    "CdpChannel",
    "FileAccessError",
    "PoolFunctions",
    "RpcClosedError",
    "RpcError",
    "RpcPeer",
    "RpcRemoteError",
    "RpcTimeoutError",
    "WorkerClient",
]
