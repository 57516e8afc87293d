"""WebSocket provider manifest."""

from cdp_test_pool.providers.manifest import ProviderManifest
from cdp_test_pool.providers.websocket.config import WebSocketConfig
from cdp_test_pool.providers.websocket.provider import WebSocketProvider

websocket_manifest = ProviderManifest(
    config_cls=WebSocketConfig,
    provider_factory=WebSocketProvider.from_config,
)
