"""Pydantic models for the Chrome DevTools HTTP endpoints."""

from pydantic import BaseModel, ConfigDict, Field


class TargetInfo(BaseModel):
    """A debuggable target from ``/json/list`` or ``/json/new``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    type: str
    title: str = ""
    url: str = ""
    web_socket_debugger_url: str | None = Field(
        default=None, alias="webSocketDebuggerUrl"
    )
