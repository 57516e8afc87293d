"""Tests for provider loading module."""

import pytest

from cdp_test_pool.providers.chrome import chrome_manifest
from cdp_test_pool.providers.loading import (
    ProviderNotFoundError,
    load_provider_manifest,
)
from cdp_test_pool.providers.websocket import websocket_manifest


def test_load_provider_manifest_returns_manifest() -> None:
    """Loads provider manifest by key."""
    assert load_provider_manifest("websocket") is websocket_manifest
    assert load_provider_manifest("chrome") is chrome_manifest


def test_load_provider_manifest_raises_for_unknown_provider() -> None:
    """Raises ProviderNotFoundError for unknown provider key."""
    with pytest.raises(ProviderNotFoundError) as exc_info:
        load_provider_manifest("unknown-provider")

    assert "unknown-provider" in str(exc_info.value)
    assert "Available providers" in str(exc_info.value)
