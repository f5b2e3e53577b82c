"""
Stub configuration definition.

Read from the function's environment, which the deploy step fills in when it
puts the stub in place of the real code.
"""

import sys

from pydantic import Field

from livebridge.common.core.config import BaseAppConfig


class StubConfig(BaseAppConfig):
    """
    Configuration management for the remote stub.
    """

    LIVEBRIDGE_ENDPOINT: str = Field(default="", description="Bridge relay URL")
    LIVEBRIDGE_FUNCTION_ID: str = Field(
        default="", description="Function id registered with the local dispatcher"
    )
    DEADLINE_MARGIN_SECONDS: float = Field(
        default=0.5, ge=0, description="Reserved before the platform timeout for the reply"
    )
    DEFAULT_TIMEOUT_SECONDS: float = Field(
        default=10.0, gt=0, description="Deadline used when the context has no remaining time"
    )


# Load config as a singleton.
try:
    config = StubConfig()
except Exception as e:
    sys.stderr.write(f"Failed to load configuration: {e}\n")
    raise
