from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.4.0"


class FixedSubscription(BaseModel):
    """A default subscription shipped with a deployment"""
    name: str
    url: str


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8787
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    DOCS_URL: str = "/docs"
    REDOC_URL: str = "/redoc"
    OPENAPI_URL: str = "/openapi.json"

    # Route Configuration
    ROOT_PATH: str = ""
    PROXY_PATH: str = "/api/proxy"
    # Externally visible base URL (e.g. https://tv.example.com). When unset, the
    # proxy URL written into playlists is derived from the incoming request.
    PUBLIC_URL: Optional[str] = None

    # Origin fetch configuration
    # Upper bound (seconds) for the origin to answer before we return 504
    FETCH_TIMEOUT: float = 20.0
    # Per-read timeout while relaying a body that is already flowing
    READ_TIMEOUT: float = 30.0
    MAX_CONNECTIONS: int = 100
    MAX_KEEPALIVE_CONNECTIONS: int = 20
    STREAM_CHUNK_SIZE: int = 65536
    DEFAULT_USER_AGENT: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
    # Many origins reject requests without a Referer (anti-hotlinking)
    SEND_REFERER: bool = True

    # Browser origins allowed to use the API ("*" allows everyone)
    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    # Subscriptions
    SUBSCRIPTIONS_FILE: str = "data/subscriptions.json"
    # JSON list, e.g. FIXED_SUBSCRIPTIONS='[{"name": "News", "url": "https://..."}]'
    FIXED_SUBSCRIPTIONS: List[FixedSubscription] = []

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )


# Global settings instance
settings = Settings()
