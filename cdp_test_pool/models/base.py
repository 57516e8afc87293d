"""Base model for configuration objects."""

from pydantic import BaseModel, ConfigDict


class Model(BaseModel):
    """Immutable model that rejects unknown keys.

    Configuration arrives as JSON from the command line or a config file, so
    a typo in a key should fail loudly instead of being ignored.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")
