"""
Relay configuration definition.

Loads configuration from environment variables and provides a Pydantic model.
Uses pydantic-settings for type safety and defaults.
"""

import sys

from pydantic import Field, model_validator

from livebridge.common.core.config import BaseAppConfig


class RelayConfig(BaseAppConfig):
    """
    Configuration management for the bridge relay.
    """

    # Server settings
    RELAY_BIND_ADDR: str = Field(default="0.0.0.0:8787", description="Listen address")
    LOG_CONFIG_PATH: str = Field(
        default="config/relay_log.yaml", description="Logging dictConfig YAML path"
    )

    # Session settings
    SESSION_LIVENESS_SECONDS: float = Field(
        default=30.0, description="A session without activity for this long counts as gone"
    )
    POLL_WAIT_MAX_SECONDS: float = Field(
        default=20.0, description="Upper bound for a single long-poll wait"
    )

    # FastAPI settings
    root_path: str = Field(default="", description="API root path (for proxy)")

    @model_validator(mode="after")
    def _poll_shorter_than_liveness(self) -> "RelayConfig":
        if self.POLL_WAIT_MAX_SECONDS >= self.SESSION_LIVENESS_SECONDS:
            raise ValueError("POLL_WAIT_MAX_SECONDS must be shorter than SESSION_LIVENESS_SECONDS")
        return self


# Load config as a singleton.
try:
    config = RelayConfig()
except Exception as e:
    sys.stderr.write(f"Failed to load configuration: {e}\n")
    raise
