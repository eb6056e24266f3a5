# src/engine/config.py
import os
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    max_parallel_scans: int = Field(3, ge=1, validation_alias="MAX_PARALLEL_SCANS")
    scan_timeout: int = Field(300, ge=1, validation_alias="SCAN_TIMEOUT")
    db_init_timeout: int = Field(60, ge=1, validation_alias="DB_INIT_TIMEOUT")
    trivy_cache_dir: str = Field(
        os.path.join(os.path.expanduser("~"), ".cache", "trivy"),
        validation_alias="TRIVY_CACHE_DIR",
    )
    trivy_binary: str = Field("trivy", validation_alias="TRIVY_BINARY")
    scan_output_limit: int = Field(10 * 1024 * 1024, ge=1, validation_alias="SCAN_OUTPUT_LIMIT")
    scan_retention_seconds: float = Field(3600, ge=0, validation_alias="SCAN_RETENTION_SECONDS")
    scan_quota_per_month: int = Field(0, ge=0, validation_alias="SCAN_QUOTA_PER_MONTH")
    database_url: str = Field("sqlite:///./scan_records.db", validation_alias="DATABASE_URL")
    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")


@lru_cache
def get_settings() -> Settings:
    return Settings()
