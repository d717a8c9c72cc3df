"""Configuration for Logfire observability."""

import os
from typing import Literal

from pydantic import BaseModel, Field


def _send_to_logfire() -> bool | Literal["if-token-present"]:
    value = os.getenv("LOGFIRE_SEND")
    if value is None:
        return "if-token-present"
    return value.lower() == "true"


class ObservabilityConfig(BaseModel):
    """Configuration for Logfire observability (``LOGFIRE_*`` environment)."""

    token: str = Field(default_factory=lambda: os.getenv("LOGFIRE_TOKEN", ""))
    project_name: str = "library-circulation"
    environment: str = Field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))

    enabled: bool = Field(
        default_factory=lambda: os.getenv("LOGFIRE_ENABLED", "true").lower() == "true"
    )
    console_output: bool = Field(
        default_factory=lambda: os.getenv("LOGFIRE_CONSOLE", "false").lower() == "true"
    )
    send_to_logfire: bool | Literal["if-token-present"] = Field(default_factory=_send_to_logfire)
