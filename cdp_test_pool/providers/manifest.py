"""Provider manifest definition for the plugin system."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel

from cdp_test_pool.providers.base import EndpointProvider

ConfigT = TypeVar("ConfigT", bound=BaseModel)


@dataclass(frozen=True, kw_only=True)
class ProviderManifest(Generic[ConfigT]):
    """Manifest describing an endpoint provider plugin.

    The manifest references the configuration class and the provider factory
    so providers are only imported when selected by key.
    """

    config_cls: type[ConfigT]
    provider_factory: Callable[
        [ConfigT], AbstractAsyncContextManager[EndpointProvider]
    ]
