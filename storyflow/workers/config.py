from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-worker"
    api_key: str = "local-worker-key"
    worker_id: str | None = None
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    batch_size: int = 5
    stall_reset_interval_seconds: float = 60.0
    stall_reset_batch_size: int = 100
    generation_base_url: str = "http://localhost:8100"
    generation_api_key: str | None = None
    generation_timeout_seconds: float = 120.0
    otel_enabled: bool = True
    otel_service_name: str = "storyflow-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SF_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> WorkerSettings:
    return WorkerSettings()
