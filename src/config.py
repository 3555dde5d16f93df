from functools import lru_cache
from typing import ClassVar, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from src.observability.models import ThresholdConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    environment: Literal["production", "development"] = "production"

    # Alert thresholds evaluated by the store on every ingestion
    max_latency_ms: float = 20_000
    min_success_rate: float = 0.95
    max_cost_per_hour: float = 5.0
    max_tokens_per_hour: int = 50_000
    max_errors_per_hour: int = 10
    success_rate_min_samples: int = 10

    # Retention bounds (checked on every ingestion)
    retention_hours: int = 24
    max_records: int = 10_000
    resolved_alert_retention_days: int = 7

    # Collector-level soft warnings (log only, not alerts)
    slow_request_ms: float = 15_000
    costly_request_usd: float = 0.1

    # Live stream
    stream_interval_seconds: float = 30.0
    stream_max_duration_seconds: float = 300.0

    # System sampler
    system_snapshot_interval_seconds: int = 60
    memory_warning_mb: float = 500.0

    # Pipeline dependencies, only used to report availability.
    # Empty string means not configured.
    openai_api_key: str = ""
    tavily_api_key: str = ""
    supabase_url: str = ""
    supabase_anon_key: str = ""

    # Dashboard access (empty = auth not configured)
    dashboard_password: str = ""

    # IANA zone for "today" and hour-of-day buckets (empty = server local time)
    dashboard_timezone: str = ""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    def thresholds(self) -> ThresholdConfig:
        """Build the threshold configuration handed to the metrics store."""
        return ThresholdConfig(
            max_latency_ms=self.max_latency_ms,
            min_success_rate=self.min_success_rate,
            max_cost_per_hour=self.max_cost_per_hour,
            max_tokens_per_hour=self.max_tokens_per_hour,
            max_errors_per_hour=self.max_errors_per_hour,
            success_rate_min_samples=self.success_rate_min_samples,
        )

    def service_status(self) -> dict[str, bool]:
        """Which pipeline dependencies have credentials configured."""
        return {
            "openai": bool(self.openai_api_key),
            "tavily": bool(self.tavily_api_key),
            "supabase": bool(self.supabase_url and self.supabase_anon_key),
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
