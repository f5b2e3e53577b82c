"""
Common Configuration
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class BaseAppConfig(BaseSettings):
    """
    Common application settings.
    """

    LOG_LEVEL: str = Field(default="INFO", description="Log level")
    VERIFY_SSL: bool = Field(default=True, description="Whether to verify SSL certificates")

    # ===== Bridge Defaults =====
    RELAY_API_KEY: str = Field(
        default="", description="Shared key sent as X-Api-Key to the relay (empty disables)"
    )
    INLINE_PAYLOAD_LIMIT: int = Field(
        default=128 * 1024,
        description="Largest payload carried inline in a frame before it is offloaded",
    )
    BLOB_STORE_URL: str = Field(
        default="", description="Blob side-channel (s3://bucket/prefix or file:///dir)"
    )
    LOG_SINK_URL: str = Field(default="", description="HTTP JSON-lines log sink URL")

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )
