"""Pydantic models for request telemetry, process snapshots, alerts, and dashboard aggregates."""

from enum import StrEnum
from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field


class AlertType(StrEnum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class MetricRecord(BaseModel):
    """Telemetry for one completed pipeline operation.

    Built once by a collector (or the admin injector) and never changed after
    ingestion. ``rag_searches`` being set, not its value, marks the request as
    one that used retrieval.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: AwareDatetime  # collection start
    endpoint: str

    latency_ms: float
    success: bool
    error_message: str | None = None

    tokens_used: int = 0
    model_used: str = "unknown"
    estimated_cost: float = 0.0

    approach: str | None = None
    stages_completed: tuple[str, ...] | None = None

    rag_searches: int | None = None
    rag_sources: int | None = None
    urls_verified: int | None = None

    user_input: str | None = None
    followup_answers: Any = None
    cards_generated: int | None = None


class SystemSnapshot(BaseModel):
    """Point-in-time process health."""

    model_config = ConfigDict(frozen=True)

    timestamp: AwareDatetime
    memory_usage_mb: float
    cpu_usage: float | None = None  # percent
    active_connections: int = 0
    services: dict[str, bool] = Field(default_factory=dict)


class Alert(BaseModel):
    """A threshold violation. ``resolved`` is the only field changed after creation."""

    id: str
    type: AlertType
    title: str
    message: str
    timestamp: AwareDatetime
    resolved: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class ThresholdConfig(BaseModel):
    """Alerting thresholds supplied to the store at construction."""

    model_config = ConfigDict(frozen=True)

    max_latency_ms: float = 20_000
    min_success_rate: float = 0.95
    max_cost_per_hour: float = 5.0
    max_tokens_per_hour: int = 50_000
    max_errors_per_hour: int = 10
    # Hourly success rate is only judged once the hour has this many records
    success_rate_min_samples: int = 10


class MetricQuery(BaseModel):
    """Filter for listing raw records. All fields optional."""

    start_time: AwareDatetime | None = None
    end_time: AwareDatetime | None = None
    endpoint: str | None = None
    success: bool | None = None
    limit: int | None = Field(default=None, ge=1)


# ---------------------------------------------------------------------------
# Dashboard aggregates
# ---------------------------------------------------------------------------


class TodayStats(BaseModel):
    total_requests: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    total_cost: float = 0.0
    total_tokens: int = 0


class HourlyBucket(BaseModel):
    hour: int  # 0-23, local hour-of-day
    requests: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    cost: float = 0.0


class ModelUsage(BaseModel):
    model: str
    count: int
    tokens: int
    cost: float
    percentage: float


class EndpointStats(BaseModel):
    endpoint: str
    count: int
    avg_latency_ms: float
    success_rate: float
    total_cost: float


class RagStats(BaseModel):
    utilization_rate: float = 0.0  # percent of today's requests
    avg_searches_per_request: float = 0.0
    avg_sources_found: float = 0.0
    url_verification_rate: float = 0.0


class RecentError(BaseModel):
    timestamp: AwareDatetime
    endpoint: str
    error: str
    user_input: str | None = None  # truncated for display


class DashboardStats(BaseModel):
    """Full aggregate view returned by ``MetricsStore.snapshot``."""

    today: TodayStats
    hourly: list[HourlyBucket]
    model_usage: list[ModelUsage]
    endpoint_stats: list[EndpointStats]
    rag_stats: RagStats
    recent_errors: list[RecentError]
    alerts: list[Alert]
