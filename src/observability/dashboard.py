"""Dashboard query and administrative actions over a MetricsStore.

Both entry points return structured responses with a ``success`` flag and never
let an exception escape; failures are logged and reported as
``success=False`` with a short error message and no partial data.
"""

import logging
import random
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel

from src.observability.metrics import estimate_cost
from src.observability.models import DashboardStats, MetricRecord, SystemSnapshot
from src.observability.store import MetricsStore

logger = logging.getLogger(__name__)

API_VERSION = "2.0.0"


class DashboardAction(StrEnum):
    INJECT_TEST_METRIC = "inject_test_metric"
    RESOLVE_ALL_ALERTS = "resolve_all_alerts"


class DashboardMeta(BaseModel):
    version: str = API_VERSION
    data_retention_hours: float
    update_interval_seconds: float


class DashboardResponse(BaseModel):
    """Response body for GET /api/dashboard."""

    success: bool
    timestamp: datetime
    stats: DashboardStats | None = None
    system: SystemSnapshot | None = None
    meta: DashboardMeta | None = None
    error: str | None = None


class ActionRequest(BaseModel):
    """Request body for POST /api/dashboard."""

    action: str
    data: dict[str, Any] | None = None


class ActionResponse(BaseModel):
    """Response body for POST /api/dashboard."""

    success: bool
    message: str | None = None
    metric: MetricRecord | None = None
    resolved: int | None = None
    error: str | None = None


class InjectedMetricData(BaseModel):
    """Fields accepted by ``inject_test_metric``. Omitted values get demo defaults."""

    endpoint: str = "/api/test"
    latency: float | None = None  # ms
    success: bool = True
    tokens: int | None = None
    model: str = "gpt-4o-mini"
    cost: float | None = None
    approach: str = "test"
    cards: int | None = None
    error: str | None = None
    rag_searches: int | None = None
    rag_sources: int | None = None
    urls_verified: int | None = None
    user_input: str | None = None


def get_dashboard(store: MetricsStore, *, update_interval_seconds: float = 30.0) -> DashboardResponse:
    """Full dashboard snapshot, or ``success=False`` if aggregation fails."""
    try:
        stats = store.snapshot()
        response = DashboardResponse(
            success=True,
            timestamp=store.now(),
            stats=stats,
            system=store.latest_system_snapshot(),
            meta=DashboardMeta(
                data_retention_hours=store.retention.total_seconds() / 3600,
                update_interval_seconds=update_interval_seconds,
            ),
        )
    except Exception:
        logger.exception("Failed to compute dashboard stats")
        return DashboardResponse(success=False, timestamp=store.now(), error="Failed to fetch dashboard stats")

    logger.info(
        "Dashboard stats: %d requests today, success rate %.1f%%",
        stats.today.total_requests,
        stats.today.success_rate * 100,
    )
    return response


def build_test_metric(store: MetricsStore, data: InjectedMetricData) -> MetricRecord:
    """Synthesize a record for demos and manual alert testing."""
    tokens = data.tokens if data.tokens is not None else random.randint(100, 1100)
    success = data.success
    return MetricRecord(
        id=f"test_{uuid4().hex[:12]}",
        timestamp=store.now(),
        endpoint=data.endpoint,
        latency_ms=data.latency if data.latency is not None else random.uniform(1000, 6000),
        success=success,
        error_message=None if success else (data.error or "Injected test failure"),
        tokens_used=tokens,
        model_used=data.model,
        estimated_cost=data.cost if data.cost is not None else estimate_cost(data.model, tokens),
        approach=data.approach,
        rag_searches=data.rag_searches,
        rag_sources=data.rag_sources,
        urls_verified=data.urls_verified,
        user_input=data.user_input,
        cards_generated=data.cards if data.cards is not None else random.randint(1, 5),
    )


def run_action(store: MetricsStore, action: DashboardAction, data: dict[str, Any] | None = None) -> ActionResponse:
    """Execute an administrative action against the store."""
    try:
        if action is DashboardAction.INJECT_TEST_METRIC:
            record = build_test_metric(store, InjectedMetricData.model_validate(data or {}))
            store.ingest(record)
            logger.info("Injected test metric %s", record.id)
            return ActionResponse(success=True, message="Test metric added", metric=record)

        resolved = store.resolve_all_alerts()
        return ActionResponse(success=True, message=f"{resolved} alerts resolved", resolved=resolved)
    except Exception:
        logger.exception("Dashboard action '%s' failed", action.value)
        return ActionResponse(success=False, error="Failed to process request")
