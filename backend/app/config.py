"""Feed server configuration with environment variable support.

All settings can be overridden via environment variables prefixed with
``THREADLINE_``, or via a ``.env`` file in the project root.

Examples::

    THREADLINE_PORT=9000 threadline serve
    THREADLINE_DATA_DIR=/var/data/threadline threadline serve
    THREADLINE_LOG_LEVEL=DEBUG threadline serve
"""

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Project root: two levels up from this file (backend/app/config.py -> project/)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Feed server configuration; every value can be overridden via env vars."""

    model_config = SettingsConfigDict(
        env_prefix="THREADLINE_",
        env_file=str(_BASE_DIR / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    # Paths
    data_dir: Path = _BASE_DIR / "data"

    # Logging
    log_level: str = "INFO"

    # Largest window a single subscription may request
    max_window: int = 5000

    @property
    def db_path(self) -> Path:
        return self.data_dir / "threadline.db"

    @property
    def database_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


# Singleton instance, import this everywhere
settings = Settings()

DATA_DIR = settings.data_dir
DATABASE_URL = settings.database_url
