"""Prometheus metric definitions and the per-model price table.

All metrics are module-level singletons registered with the default
prometheus_client registry.  Import them wherever instrumentation is needed.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, Info

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Histogram bucket definitions
# ---------------------------------------------------------------------------

REQUEST_DURATION_BUCKETS = (0.5, 1.0, 2.0, 5.0, 10.0, 15.0, 20.0, 30.0, 60.0)

# ---------------------------------------------------------------------------
# Pipeline request metrics (populated on store ingestion)
# ---------------------------------------------------------------------------

REQUEST_DURATION = Histogram(
    "pipeline_telemetry_request_duration_seconds",
    "End-to-end pipeline request duration in seconds",
    labelnames=["endpoint"],
    buckets=REQUEST_DURATION_BUCKETS,
)

REQUESTS_TOTAL = Counter(
    "pipeline_telemetry_requests_total",
    "Total number of ingested pipeline requests",
    labelnames=["endpoint", "status"],
)

LLM_TOKEN_USAGE = Counter(
    "pipeline_telemetry_llm_token_usage",
    "Total LLM token usage",
    labelnames=["model"],
)

LLM_ESTIMATED_COST = Counter(
    "pipeline_telemetry_llm_estimated_cost_dollars",
    "Estimated cumulative LLM cost in USD",
    labelnames=["model"],
)

RAG_SEARCHES_TOTAL = Counter(
    "pipeline_telemetry_rag_searches_total",
    "Total retrieval searches reported by pipeline requests",
)

RETAINED_RECORDS = Gauge(
    "pipeline_telemetry_retained_records",
    "Number of metric records currently held in memory",
)

# ---------------------------------------------------------------------------
# Alerting
# ---------------------------------------------------------------------------

ALERTS_TOTAL = Counter(
    "pipeline_telemetry_alerts_total",
    "Total number of alerts raised",
    labelnames=["type"],
)

ACTIVE_ALERTS = Gauge(
    "pipeline_telemetry_active_alerts",
    "Number of unresolved alerts",
)

# ---------------------------------------------------------------------------
# Live stream
# ---------------------------------------------------------------------------

STREAM_SESSIONS = Gauge(
    "pipeline_telemetry_stream_sessions",
    "Number of open dashboard live-stream sessions",
)

STREAM_EVENTS_TOTAL = Counter(
    "pipeline_telemetry_stream_events_total",
    "Total number of events pushed to live-stream subscribers",
    labelnames=["event"],
)

# ---------------------------------------------------------------------------
# Health / info metrics
# ---------------------------------------------------------------------------

COMPONENT_HEALTHY = Gauge(
    "pipeline_telemetry_component_healthy",
    "Whether a pipeline dependency is configured (1=available, 0=unavailable)",
    labelnames=["component"],
)

PROCESS_MEMORY_MB = Gauge(
    "pipeline_telemetry_process_memory_mb",
    "Resident memory of the service process in MB",
)

APP_INFO = Info(
    "pipeline_telemetry",
    "Pipeline telemetry build information",
)

# ---------------------------------------------------------------------------
# Cost pricing (USD per token)
# ---------------------------------------------------------------------------

# Blended per-token prices. Keys are model name prefixes; the longest
# matching prefix wins so "gpt-4o-mini" is not priced as "gpt-4o".
COST_PER_TOKEN: dict[str, float] = {
    "gpt-4o-mini": 0.15 / 1_000_000,
    "gpt-4o": 2.50 / 1_000_000,
    "gpt-4-turbo": 10.00 / 1_000_000,
    "gpt-3.5-turbo": 1.50 / 1_000_000,
}
# gpt-4o rate
DEFAULT_COST_PER_TOKEN: float = 2.50 / 1_000_000

_warned_models: set[str] = set()


def cost_per_token(model: str) -> float:
    """Return the per-token price for ``model``, falling back to the default rate.

    Unknown model names are logged once each so new models don't get
    silently mispriced forever.
    """
    best = ""
    for prefix in COST_PER_TOKEN:
        if model.startswith(prefix) and len(prefix) > len(best):
            best = prefix
    if best:
        return COST_PER_TOKEN[best]

    if model not in _warned_models:
        _warned_models.add(model)
        logger.warning("No price for model '%s'; using default rate %.8f/token", model, DEFAULT_COST_PER_TOKEN)
    return DEFAULT_COST_PER_TOKEN


def estimate_cost(model: str, tokens: int) -> float:
    """Estimated USD cost of ``tokens`` tokens on ``model``."""
    if tokens <= 0:
        return 0.0
    return tokens * cost_per_token(model)
