"""
Dispatcher configuration definition.

Loads configuration from environment variables and provides a Pydantic model.
Uses pydantic-settings for type safety and defaults.
"""

import sys
from typing import Literal

from pydantic import Field

from livebridge.common.core.config import BaseAppConfig


class DispatcherConfig(BaseAppConfig):
    """
    Configuration management for the local dispatcher.
    """

    # Bridge settings
    RELAY_URL: str = Field(default="http://127.0.0.1:8787", description="Bridge relay endpoint")
    POLL_WAIT_SECONDS: float = Field(default=15.0, description="Long-poll wait per request")
    RECONNECT_BACKOFF_SECONDS: float = Field(
        default=1.0, description="Initial delay before re-opening a lost session"
    )
    RECONNECT_BACKOFF_MAX_SECONDS: float = Field(default=15.0, description="Backoff ceiling")

    # Control surface
    CONTROL_BIND_ADDR: str = Field(
        default="127.0.0.1:13557", description="Local control API listen address"
    )

    # Path settings
    FUNCTIONS_CONFIG_PATH: str = Field(
        default=".livebridge/functions.yml", description="Function definition intake file"
    )
    BUILD_ROOT: str = Field(default=".livebridge/artifacts", description="Build output root")
    LOG_CONFIG_PATH: str = Field(
        default="config/dispatcher_log.yaml", description="Logging dictConfig YAML path"
    )

    # Build settings
    BUILD_TIMEOUT: float = Field(default=300.0, description="Upper bound for one build (seconds)")
    BUILD_ERROR_CACHE_TTL: float = Field(
        default=3600.0, description="How long a failed build is served from cache (seconds)"
    )
    BUILD_CACHE_MAX_ENTRIES: int = Field(default=256, description="Negative cache size")
    ESBUILD_COMMAND: str = Field(default="npx --yes esbuild", description="esbuild invocation")
    NPM_COMMAND: str = Field(default="npm", description="npm executable")
    PIP_COMMAND: str = Field(default="", description="pip invocation (default: <python> -m pip)")

    # Worker settings
    WORKER_ISOLATION: Literal["per_invocation", "pooled"] = Field(
        default="per_invocation", description="Worker reuse policy"
    )
    WORKER_POOL_MAX_SIZE: int = Field(default=4, ge=1, description="Warm workers per function")
    WORKER_ACQUIRE_TIMEOUT: float = Field(default=30.0, description="Worker acquisition timeout")
    WORKER_IDLE_TIMEOUT_SECONDS: int = Field(default=300, description="Idle worker lifetime")
    JANITOR_INTERVAL: int = Field(default=30, description="Idle worker pruning interval (seconds)")
    PYTHON_COMMAND: str = Field(default="", description="Interpreter for python workers")
    NODE_COMMAND: str = Field(default="node", description="Interpreter for node workers")

    # Hot reload
    CONFIG_RELOAD_ENABLED: bool = Field(default=True, description="Watch the intake file")
    CONFIG_RELOAD_INTERVAL: float = Field(default=1.0, description="Polling interval (seconds)")


# Load config as a singleton.
# pydantic-settings reads environment variables during instantiation.
try:
    config = DispatcherConfig()
except Exception as e:
    sys.stderr.write(f"Failed to load configuration: {e}\n")
    raise
