"""Chrome provider manifest."""

from cdp_test_pool.providers.chrome.config import ChromeConfig
from cdp_test_pool.providers.chrome.provider import ChromeProvider
from cdp_test_pool.providers.manifest import ProviderManifest

chrome_manifest = ProviderManifest(
    config_cls=ChromeConfig,
    provider_factory=ChromeProvider.from_config,
)
