"""
Environment-driven settings for the call bridge.

Values are read once at start-up and handed to each call session explicitly,
so nothing in the bridge reaches for process-wide state while a call is live.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from voice_bridge.config.constants import (
    AUDIO_FORMAT_G711_ULAW,
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REALTIME_URL,
    DEFAULT_TOOL_TIMEOUT_SECONDS,
)


@dataclass(frozen=True)
class Settings:
    """Runtime configuration for the server and every call session."""

    openai_api_key: Optional[str]
    realtime_model: str = DEFAULT_REALTIME_MODEL
    realtime_url: str = DEFAULT_REALTIME_URL
    database_url: str = "sqlite:///./voice_bridge.db"
    audio_format: str = AUDIO_FORMAT_G711_ULAW
    business_timezone: str = "UTC"
    tool_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from environment variables (``os.environ`` by default)."""
        env = os.environ if environ is None else environ
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            realtime_model=env.get("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
            realtime_url=env.get("OPENAI_REALTIME_URL", DEFAULT_REALTIME_URL),
            database_url=env.get("DATABASE_URL", "sqlite:///./voice_bridge.db"),
            audio_format=env.get("AUDIO_FORMAT", AUDIO_FORMAT_G711_ULAW).lower(),
            business_timezone=env.get("BUSINESS_TIMEZONE", "UTC"),
            tool_timeout_seconds=float(
                env.get("TOOL_TIMEOUT_SECONDS", DEFAULT_TOOL_TIMEOUT_SECONDS)
            ),
            host=env.get("HOST", "0.0.0.0"),
            port=int(env.get("PORT", "8000")),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
