"""Client configuration with environment variable support.

All settings can be overridden via environment variables prefixed with
``THREADLINE_``, or via a ``.env`` file in the working directory.

Examples::

    THREADLINE_FEED_URL=http://chat.lan:8000 threadline tail --room r1 --channel c1
    THREADLINE_WINDOW_SIZE=200 threadline search hello --channel general
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Chat client configuration; every value can be overridden via env vars."""

    model_config = SettingsConfigDict(
        env_prefix="THREADLINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Remote feed server (see backend/app)
    feed_url: str = "http://localhost:8000"
    request_timeout: float = 10.0
    reconnect_delay: float = 2.0

    # Trailing window of messages loaded per scope
    window_size: int = Field(500, ge=1)

    # Lines of the parent message shown in a reply quote
    snippet_lines: int = Field(2, ge=1)

    log_level: str = "INFO"

    @property
    def ws_url(self) -> str:
        """WebSocket endpoint derived from ``feed_url``."""
        base = self.feed_url.rstrip("/")
        if base.startswith("https://"):
            return "wss://" + base[len("https://"):] + "/ws"
        if base.startswith("http://"):
            return "ws://" + base[len("http://"):] + "/ws"
        return base + "/ws"


settings = ClientSettings()
