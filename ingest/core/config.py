from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "ingest-pipeline"
    environment: str = "dev"
    log_level: str = "INFO"
    default_locale: str = "en"
    source_modules: list[str] = []
    database_url: str | None = None
    app_database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    snapshot_mode: Literal["local", "object"] = "local"
    snapshot_local_dir: str = "./snapshots"
    snapshot_bucket: str = "ingestion-snapshots"
    storage_url: str | None = None
    storage_service_key: str | None = None
    storage_timeout_seconds: float = 30.0
    quality_threshold: float = 0.6
    reconciliation_page_size: int = 500
    reconciliation_spike_threshold: int = 25
    probe_timeout_seconds: float = 12.0
    api_key: str | None = None
    api_key_header: str = "X-API-Key"
    otel_enabled: bool = True
    otel_service_name: str = "ingest-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
