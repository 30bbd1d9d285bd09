"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


DAY_MS = 24 * 60 * 60 * 1000


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Local persistence
    storage_backend: Literal["sqlite", "redis", "memory"] = Field(default="sqlite")
    storage_url: str = Field(default="sqlite+aiosqlite:///./data/fieldsync.db")
    storage_echo: bool = Field(default=False)
    redis_url: Optional[str] = Field(default=None)

    # Remote API
    api_base_url: str = Field(default="https://fims.cosmopolitan.edu.ng")
    api_timeout: float = Field(default=10.0, ge=1.0, le=120.0)
    api_token: Optional[str] = Field(default=None)

    # Connectivity
    connectivity_probe_url: str = Field(default="https://fims.cosmopolitan.edu.ng/api/health")
    connectivity_probe_interval: float = Field(default=15.0, ge=1.0)
    connectivity_probe_timeout: float = Field(default=5.0, ge=0.5, le=60.0)

    # Cache expiry per resource (milliseconds)
    cache_farmers_ttl_ms: int = Field(default=DAY_MS, ge=0)
    cache_farms_ttl_ms: int = Field(default=DAY_MS, ge=0)
    cache_clusters_ttl_ms: int = Field(default=7 * DAY_MS, ge=0)  # rarely changes

    # Sync queue
    sync_max_attempts: int = Field(default=5, ge=1, le=50)
    sync_replay_delay: float = Field(default=0.5, ge=0.0, le=60.0)
    sync_backoff_multiplier: float = Field(default=1.0, ge=1.0, le=10.0)
    sync_max_delay: float = Field(default=30.0, ge=0.0)
    sync_reset_on_manual_retry: bool = Field(default=False)
    sync_done_retention: float = Field(default=0.0, ge=0.0)  # seconds, 0 = remove on success

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="json")
    log_file: Optional[str] = Field(default=None)

    @field_validator("storage_url")
    @classmethod
    def validate_storage_url(cls, v):
        """Ensure database directory exists for SQLite."""
        if v and v.startswith("sqlite") and ":///" in v:
            db_path = v.split("///")[1]
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
