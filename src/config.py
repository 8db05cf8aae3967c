from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional

# Application version
VERSION = "0.1.0"


class Settings(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Utilizes pydantic-settings for robust validation and type-casting.
    """

    # Server Configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str = "info"
    RELOAD: bool = False
    ROOT_PATH: str = ""
    DOCS_URL: Optional[str] = "/docs"
    OPENAPI_URL: str = "/openapi.json"

    # Control plane (process-control API) connection
    CONTROL_PLANE_URL: str = "http://localhost:8080"
    CONTROL_PLANE_USERNAME: str = "admin"
    CONTROL_PLANE_PASSWORD: str = ""
    # Per-request timeout for control plane calls (seconds)
    CONTROL_PLANE_TIMEOUT: float = 15.0
    # Tokens expiring within this many seconds are treated as expired
    TOKEN_REFRESH_MARGIN: int = 60
    # Validity assumed for a token whose expiry claim cannot be decoded
    TOKEN_FALLBACK_TTL: int = 300

    # Stream proxy
    # Public, path-only prefix embedded into rewritten manifests. Browsers
    # resolve it against their current origin, so put the reverse proxy
    # prefix here when the API is mounted under one (e.g. /api/stream-proxy).
    STREAM_PROXY_PATH: str = "/stream-proxy"
    PROXY_TIMEOUT: float = 10.0
    PROXY_MAX_REDIRECTS: int = 5
    # Upstream bodies larger than this are truncated (50 MB)
    PROXY_MAX_BODY_BYTES: int = 50 * 1024 * 1024
    SEGMENT_CACHE_MAX_AGE: int = 60

    # Stream creation admission (global sliding window)
    STREAM_CREATE_RATE_LIMIT: int = 10
    STREAM_CREATE_RATE_WINDOW: float = 60.0

    # Pause between stop and start when restarting a stream
    RESTART_DELAY: float = 1.0

    # API Authentication for stream management routes
    API_KEY: Optional[str] = None
    # Comma separated list of allowed origins; empty allows all
    CORS_ORIGINS: str = ""

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",  # No prefix, read directly from .env
        extra="ignore"  # Ignore extra environment variables from container
    )

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip().rstrip("/") for o in self.CORS_ORIGINS.split(",") if o.strip()]


# Global settings instance
settings = Settings()
