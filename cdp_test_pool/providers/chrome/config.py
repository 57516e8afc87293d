"""Configuration for the Chrome remote debugging provider."""

from pydantic import BaseModel


class ChromeConfig(BaseModel):
    """Configuration for the Chrome provider.

    Targets are discovered through the ``/json/list`` endpoint of a browser
    started with ``--remote-debugging-port``.
    """

    host: str = "127.0.0.1"
    port: int = 9222
    target_type: str = "page"
    url_contains: str | None = None
    # Opened with /json/new when no target matches, closed again on teardown
    open_url: str | None = None
    context_name: str | None = None
    timeout: float = 30.0
    poll_interval: float = 0.5
