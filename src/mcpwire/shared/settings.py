"""Runtime configuration.

Every field can be set from the environment with the ``MCPWIRE_`` prefix, for
example ``MCPWIRE_REQUEST_TIMEOUT=30`` or ``MCPWIRE_LOG_LEVEL=DEBUG``. Explicit
keyword arguments passed to sessions and transports always win over settings.
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MCPWIRE_",
        env_file=".env",
        extra="ignore",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Session settings
    request_timeout: float | None = Field(default=None, gt=0)
    """Seconds to wait for a response; None waits indefinitely."""
    reset_timeout_on_progress: bool = True
    max_total_timeout: float | None = Field(default=None, gt=0)
    """Hard cap, in seconds from sending, that progress can never extend past."""
    implicit_completions: bool = False
    """Accept ``completion/complete`` without a declared ``completions`` capability."""

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = 8000
    streamable_http_path: str = "/mcp"
    json_response: bool = False


def get_settings() -> Settings:
    return Settings()
