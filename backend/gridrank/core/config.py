import os
import sys
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "GridRank API"
    app_env: str = "local"
    api_v1_prefix: str = "/api/v1"

    postgres_dsn: str = "sqlite:///./gridrank.db"
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str = "redis://localhost:6379/0"
    celery_result_backend: str = "redis://localhost:6379/1"
    celery_task_always_eager: bool = False
    celery_task_eager_propagates: bool = False
    celery_worker_prefetch_multiplier: int = 1
    celery_grid_scan_soft_time_limit_seconds: int = 45 * 60
    log_level: str = "INFO"
    log_json: bool | None = None
    metrics_enabled: bool = False
    otel_exporter_endpoint: str = ""

    ranking_provider_backend: str = "synthetic"
    dataforseo_login: str = ""
    dataforseo_password: str = ""
    dataforseo_base_url: str = "https://api.dataforseo.com/v3"
    provider_timeout_seconds: float = 30.0
    provider_language_code: str = "en"
    provider_device: str = "desktop"

    general_limiter_max_concurrent: int = 30
    general_limiter_min_interval_seconds: float = 0.034
    general_limiter_reservoir: int = 2000
    general_limiter_reservoir_interval_seconds: float = 60.0
    maps_limiter_shares_general: bool = True
    maps_limiter_max_concurrent: int = 30
    maps_limiter_min_interval_seconds: float = 0.034
    maps_limiter_reservoir: int = 2000
    maps_limiter_reservoir_interval_seconds: float = 60.0
    tasks_ready_limiter_max_concurrent: int = 5
    tasks_ready_limiter_min_interval_seconds: float = 3.0
    tasks_ready_limiter_reservoir: int = 20
    tasks_ready_limiter_reservoir_interval_seconds: float = 60.0
    google_ads_limiter_max_concurrent: int = 3
    google_ads_limiter_min_interval_seconds: float = 5.0
    google_ads_limiter_reservoir: int = 12
    google_ads_limiter_reservoir_interval_seconds: float = 60.0

    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 1.0
    retry_multiplier: float = 2.0
    retry_max_delay_seconds: float = 30.0
    retry_jitter_ratio: float = 0.1

    limiter_backend: str = "redis"

    cache_backend: str = "redis"
    cache_enabled: bool = True
    cache_ttl_serp_seconds: int = 4 * 60 * 60
    cache_ttl_reference_seconds: int = 7 * 24 * 60 * 60

    scan_search_depth: int = 20
    scan_top_entities_limit: int = 20
    scan_cost_per_call: float = 0.005
    scan_cancel_poll_seconds: float = 1.0
    scan_due_batch_limit: int = 20
    scan_skip_cache: bool = False

    @model_validator(mode="after")
    def validate_production_guardrails(self) -> "Settings":
        if self.app_env.lower() != "production":
            return self

        if self.postgres_dsn.startswith("sqlite"):
            raise ValueError("Production requires POSTGRES_DSN backed by PostgreSQL.")
        if self.ranking_provider_backend.strip().lower() == "synthetic":
            raise ValueError("Production forbids the synthetic ranking provider backend.")
        required = {
            "DATAFORSEO_LOGIN": self.dataforseo_login,
            "DATAFORSEO_PASSWORD": self.dataforseo_password,
        }
        missing = [key for key, value in required.items() if not str(value).strip()]
        if missing:
            raise ValueError(f"Production is missing required settings: {', '.join(missing)}")
        if self.cache_backend.strip().lower() == "memory":
            raise ValueError("Production requires CACHE_BACKEND=redis so cache entries are shared across workers.")
        if self.limiter_backend.strip().lower() != "redis":
            raise ValueError("Production requires LIMITER_BACKEND=redis so provider limits hold across workers.")
        return self


@lru_cache
def get_settings() -> Settings:
    app_env = os.getenv("APP_ENV", "").lower()
    is_pytest_runtime = "pytest" in sys.modules
    if app_env == "test" or (not app_env and is_pytest_runtime):
        return Settings(
            app_env="test",
            celery_task_always_eager=True,
            celery_task_eager_propagates=True,
            celery_broker_url="memory://",
            celery_result_backend="cache+memory://",
            ranking_provider_backend="synthetic",
            cache_backend="memory",
            limiter_backend="memory",
            retry_base_delay_seconds=0.0,
            retry_jitter_ratio=0.0,
        )
    return Settings()
