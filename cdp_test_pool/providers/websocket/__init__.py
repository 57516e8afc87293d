"""Literal WebSocket URL provider module."""

from cdp_test_pool.providers.websocket.config import WebSocketConfig
from cdp_test_pool.providers.websocket.manifest import websocket_manifest
from cdp_test_pool.providers.websocket.provider import WebSocketProvider

__all__ = ["WebSocketConfig", "WebSocketProvider", "websocket_manifest"]
