import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = (
        os.getenv("LIBRARY_DB_FILE")
        or os.path.join(tempfile.gettempdir(), "presence_engine.db")
    )

    # Cache settings (seconds)
    config_cache_ttl: int = int(os.getenv("CONFIG_CACHE_TTL", "300"))
    reader_cache_ttl: int = int(os.getenv("READER_CACHE_TTL", "3600"))

    # Caller identity used when no X-User-Id header is sent (development only)
    default_user_id: Optional[int] = (
        int(os.environ["DEFAULT_USER_ID"]) if os.getenv("DEFAULT_USER_ID") else None
    )

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Presence Engine")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
