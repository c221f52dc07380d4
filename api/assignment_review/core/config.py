from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

StoreBackend = Literal["postgres", "memory"]


class Settings(BaseSettings):
    app_name: str = "assignment-review-api"
    environment: str = "dev"
    store_backend: StoreBackend = "postgres"
    database_url: str | None = None
    career_database_url: str | None = None
    linkedin_database_url: str | None = None
    job_hunting_database_url: str | None = None
    github_database_url: str | None = None
    profile_database_url: str | None = None
    institute_database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 15.0
    review_cache_ttl_seconds: float = 30.0
    review_cache_max_entries: int = 256
    verified_window_pages: int = 3
    max_page_size: int = 100
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "assignment-review-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="AR_", extra="ignore")

    def dsn_for(self, store: str) -> str | None:
        override = getattr(self, f"{store}_database_url", None)
        return override or self.database_url


@lru_cache
def get_settings() -> Settings:
    return Settings()
