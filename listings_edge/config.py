"""Application configuration loaded from environment variables."""

from urllib.parse import unquote

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration — reads from environment / .env file."""

    # Rentman upstream
    rentman_api_base_url: str = "https://www.rentman.online"
    rentman_api_token: str = ""
    id_field: str = "propref"

    # Admin (gates the mutating endpoints)
    admin_token: str = ""

    # Redis
    redis_url: str = "redis://localhost:6379"
    store_memory_bytes: int = 256 * 1024 * 1024   # in-process copy, total bytes
    max_value_bytes: int = 25 * 1024 * 1024   # 25 MiB

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    allowed_origins: str = "*"

    # Cache TTLs (seconds)
    ttl_metadata: int = 300             # 5 minutes, snapshot freshness
    ttl_image: int = 3600               # 1 hour, image slots, stale snapshot retention
    ttl_record: int = 900               # 15 minutes, per-listing entries
    ttl_etag: int = 3600                # must outlive ttl_metadata
    ttl_featured_cache: int = 3600      # featured id read-cache

    # Featured set
    min_featured: int = 7
    max_featured: int = 10

    # Backfill
    backfill_delay_seconds: int = 300
    backfill_buffer_seconds: int = 600
    backfill_check_interval_seconds: int = 60

    # Upstream timeouts
    upstream_timeout_seconds: float = 10.0
    media_timeout_seconds: float = 15.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def rentman_token(self) -> str:
        """Token as sent upstream; stored URL-encoded in the environment."""
        return unquote(self.rentman_api_token) if self.rentman_api_token else ""

    @property
    def has_rentman_token(self) -> bool:
        return bool(self.rentman_api_token)

    @property
    def cors_origins(self) -> list[str]:
        if self.allowed_origins == "*":
            return ["*"]
        return [o.strip() for o in self.allowed_origins.split(",")]


settings = Settings()
