"""Configuration settings for the caching layer."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    environment: str = Field(
        default="development",
        description="Environment: 'development' or 'production'",
    )

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")

    # Cache settings
    cache_enabled: bool = Field(default=True, description="Enable caching")
    cache_backend: str = Field(
        default="memory",
        description="Store backend: 'memory', 'sqlite' or 'tiered' (memory + sqlite)",
    )
    cache_path: Path = Field(
        default=Path("data/cache.db"), description="SQLite cache path"
    )
    cache_memory_max_items: int = Field(
        default=1000, description="Max items in memory cache"
    )
    cache_ttl_default_ms: int = Field(
        default=300_000, description="TTL used when a caller gives none, in ms"
    )
    cache_ttl_list_ms: int = Field(
        default=300_000,
        description=(
            "TTL for collection queries in ms. Also the staleness bound for list "
            "shapes that mutations do not evict"
        ),
    )
    cache_ttl_detail_ms: int = Field(
        default=900_000, description="TTL for single-entity lookups in ms"
    )
    cache_track_owner_keys: bool = Field(
        default=False,
        description="Track every list key per owner so mutations evict all of them",
    )

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
