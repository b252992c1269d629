from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "storyflow-api"
    environment: str = "dev"
    storage_backend: Literal["memory", "postgres"] = "memory"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    queue_max_attempts: int = 3
    queue_retry_base_seconds: int = 60
    queue_retry_max_seconds: int = 900
    queue_stall_timeout_seconds: int = 600
    queue_default_slide_type: str = "tabloid"
    queue_default_ai_provider: str = "deepseek"
    gate_relevance_floor: int = 20
    gate_cleanup_relevance_floor: int = 5
    gate_queue_min_quality: int = 50
    gate_queue_min_relevance: int = 5
    gate_snippet_word_threshold: int = 150
    dedupe_window_size: int = 200
    dedupe_review_threshold: float = 0.75
    dedupe_auto_discard_checksum: bool = True
    dedupe_max_matches: int = 5
    story_stage_timeout_seconds: int = 600
    story_reject_duplicate_titles: bool = False
    notification_webhook_url: str | None = None
    drip_feed_webhook_url: str | None = None
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "storyflow-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True
    url_normalization_overrides_json: str | None = None

    model_config = SettingsConfigDict(env_prefix="SF_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
