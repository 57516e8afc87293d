"""Configuration for the literal WebSocket URL provider."""

from pydantic import BaseModel


class WebSocketConfig(BaseModel):
    """Configuration for the WebSocket provider."""

    url: str
    context_name: str | None = None
