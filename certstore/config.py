"""Storage settings and environment configuration."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables.

    Explicit keyword arguments win over the environment, so a host process can
    build several independent configurations side by side.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=False)

    # Backend selection (USE_S3_STORAGE=false for a single host / dev setup)
    use_s3_storage: bool = True
    local_storage_dir: str = "./data/certstore"

    # S3-compatible object store
    s3_endpoint_url: str | None = None
    s3_access_key: str = ""
    s3_secret_key: SecretStr = SecretStr("")
    s3_bucket: str = ""
    s3_prefix: str = ""
    s3_region: str = "us-east-1"
    s3_connect_timeout: float = Field(default=5.0, gt=0, le=300)
    s3_read_timeout: float = Field(default=30.0, gt=0, le=600)
    s3_max_attempts: int = Field(default=3, ge=1, le=20)

    # Distributed lock protocol
    lock_poll_interval: float = Field(default=1.0, gt=0, le=60)
    lock_freshness_interval: float = Field(default=5.0, gt=0, le=3600)
    lock_stale_after: float = Field(default=10.0, gt=0, le=86400)
    lock_holder_id: str | None = None

    log_level: Literal["debug", "info", "warning", "error", "critical"] = "info"
    log_json: bool = True

    @model_validator(mode="after")
    def validate_lock_timing(self) -> "Settings":
        """A live holder must refresh its lock before anyone may call it stale."""
        if self.lock_stale_after <= self.lock_freshness_interval:
            raise ValueError(
                "LOCK_STALE_AFTER must be greater than LOCK_FRESHNESS_INTERVAL."
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
