"""Chrome remote debugging provider module."""

from cdp_test_pool.providers.chrome.config import ChromeConfig
from cdp_test_pool.providers.chrome.manifest import chrome_manifest
from cdp_test_pool.providers.chrome.provider import ChromeProvider

__all__ = ["ChromeConfig", "ChromeProvider", "chrome_manifest"]
