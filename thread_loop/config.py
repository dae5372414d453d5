"""Environment-driven configuration."""

import logging
import sys
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoopSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="THREAD_LOOP_", env_file=".env", extra="ignore"
    )

    max_iterations: int = Field(default=10, ge=1)
    terminal_tool: str = "finish_request"
    message_tools: list[str] = Field(default_factory=lambda: ["post_message"])
    tool_timeout: Optional[float] = Field(default=None, gt=0)
    log_level: str = "INFO"

    llm_api_key: Optional[str] = None
    llm_model: str = "gpt-4.1-mini"
    llm_base_url: str = "https://api.openai.com/v1"


def configure_logging(level: str = "INFO") -> None:
    """Send library logs to stderr; meant for scripts and examples."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
