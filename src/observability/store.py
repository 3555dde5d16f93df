"""In-memory metrics store: ingestion, retention, threshold alerting, and dashboard snapshots.

One store instance is created by the API lifespan and handed to every
collector, sampler, and stream session. All mutation happens under a single
lock (append, cleanup, threshold check as one unit); reads copy the
collections under the lock and aggregate outside it.
"""

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta, tzinfo
from typing import TYPE_CHECKING, Any
from uuid import uuid4
from zoneinfo import ZoneInfo

from src.observability import aggregation
from src.observability.metrics import (
    ACTIVE_ALERTS,
    ALERTS_TOTAL,
    COMPONENT_HEALTHY,
    LLM_ESTIMATED_COST,
    LLM_TOKEN_USAGE,
    PROCESS_MEMORY_MB,
    RAG_SEARCHES_TOTAL,
    REQUEST_DURATION,
    REQUESTS_TOTAL,
    RETAINED_RECORDS,
)
from src.observability.models import (
    Alert,
    AlertType,
    DashboardStats,
    MetricQuery,
    MetricRecord,
    SystemSnapshot,
    ThresholdConfig,
)

if TYPE_CHECKING:
    from src.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = timedelta(hours=24)
DEFAULT_ALERT_RETENTION = timedelta(days=7)
DEFAULT_MAX_RECORDS = 10_000
HOURLY_WINDOW = timedelta(hours=1)
RECENT_ERRORS_LIMIT = 50
ACTIVE_ALERTS_LIMIT = 20

_ALERT_LOG_LEVELS = {
    AlertType.INFO: logging.INFO,
    AlertType.WARNING: logging.WARNING,
    AlertType.ERROR: logging.ERROR,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MetricsStore:
    """Single source of truth for request telemetry and alerts.

    Example:
        store = MetricsStore(ThresholdConfig(max_latency_ms=10_000))
        store.ingest(record)
        stats = store.snapshot()
        for alert in stats.alerts:
            store.resolve_alert(alert.id)

    Args:
        thresholds: Alerting thresholds evaluated on every ingestion.
        retention: Records older than this are dropped on ingestion.
        max_records: Upper bound on retained records; oldest are dropped first.
        alert_retention: Resolved alerts older than this are purged.
        tz: Zone used for "today" and hour-of-day buckets (None = server local).
        clock: Returns the current timezone-aware instant. Injected by tests.
    """

    def __init__(
        self,
        thresholds: ThresholdConfig | None = None,
        *,
        retention: timedelta = DEFAULT_RETENTION,
        max_records: int = DEFAULT_MAX_RECORDS,
        alert_retention: timedelta = DEFAULT_ALERT_RETENTION,
        tz: tzinfo | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_records < 1:
            msg = f"max_records must be >= 1, got {max_records}"
            raise ValueError(msg)
        if retention <= timedelta(0):
            msg = f"retention must be positive, got {retention}"
            raise ValueError(msg)

        self.thresholds = thresholds or ThresholdConfig()
        self.retention = retention
        self.max_records = max_records
        self.alert_retention = alert_retention
        self.tz = tz
        self._clock = clock

        self._records: list[MetricRecord] = []
        self._system: list[SystemSnapshot] = []
        self._alerts: list[Alert] = []
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "MetricsStore":
        """Build a store from application settings."""
        tz = ZoneInfo(settings.dashboard_timezone) if settings.dashboard_timezone else None
        return cls(
            settings.thresholds(),
            retention=timedelta(hours=settings.retention_hours),
            max_records=settings.max_records,
            alert_retention=timedelta(days=settings.resolved_alert_retention_days),
            tz=tz,
            **kwargs,
        )

    def now(self) -> datetime:
        """Current instant according to the store's clock."""
        return self._clock()

    @property
    def record_count(self) -> int:
        with self._lock:
            return len(self._records)

    @property
    def active_alert_count(self) -> int:
        with self._lock:
            return sum(1 for a in self._alerts if not a.resolved)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def ingest(self, record: MetricRecord) -> list[Alert]:
        """Store a finished record, enforce retention, and evaluate thresholds.

        Returns:
            Alerts raised by this record (usually empty).
        """
        with self._lock:
            now = self._clock()
            self._records.append(record)
            self._cleanup(now)
            raised = self._check_thresholds(record, now)
            self._set_gauges()

        self._observe(record)
        for alert in raised:
            ALERTS_TOTAL.labels(type=alert.type.value).inc()
            logger.log(_ALERT_LOG_LEVELS[alert.type], "ALERT %s: %s", alert.type.value.upper(), alert.message)
        return raised

    def ingest_system(self, snapshot: SystemSnapshot) -> None:
        """Store a process health snapshot under the same retention bounds."""
        with self._lock:
            self._system.append(snapshot)
            self._cleanup(self._clock())

        PROCESS_MEMORY_MB.set(snapshot.memory_usage_mb)
        for name, available in snapshot.services.items():
            COMPONENT_HEALTHY.labels(component=name).set(1.0 if available else 0.0)

    def _observe(self, record: MetricRecord) -> None:
        """Mirror a record into the Prometheus registry."""
        status = "success" if record.success else "error"
        REQUESTS_TOTAL.labels(endpoint=record.endpoint, status=status).inc()
        REQUEST_DURATION.labels(endpoint=record.endpoint).observe(record.latency_ms / 1000)
        if record.tokens_used > 0:
            LLM_TOKEN_USAGE.labels(model=record.model_used).inc(record.tokens_used)
        if record.estimated_cost > 0:
            LLM_ESTIMATED_COST.labels(model=record.model_used).inc(record.estimated_cost)
        if record.rag_searches is not None and record.rag_searches > 0:
            RAG_SEARCHES_TOTAL.inc(record.rag_searches)

    def _set_gauges(self) -> None:
        """Publish retained-record and active-alert gauges. Caller must hold the lock."""
        RETAINED_RECORDS.set(len(self._records))
        ACTIVE_ALERTS.set(sum(1 for a in self._alerts if not a.resolved))

    def _cleanup(self, now: datetime) -> None:
        """Drop expired records/snapshots, cap record count, purge old resolved alerts.

        Caller must hold the lock.
        """
        cutoff = now - self.retention
        self._records = [r for r in self._records if r.timestamp >= cutoff]
        if len(self._records) > self.max_records:
            self._records = self._records[-self.max_records :]

        self._system = [s for s in self._system if s.timestamp >= cutoff]
        if len(self._system) > self.max_records:
            self._system = self._system[-self.max_records :]

        alert_cutoff = now - self.alert_retention
        self._alerts = [a for a in self._alerts if not a.resolved or a.timestamp >= alert_cutoff]

    # ------------------------------------------------------------------
    # Alerting
    # ------------------------------------------------------------------

    def _check_thresholds(self, record: MetricRecord, now: datetime) -> list[Alert]:
        """Evaluate every threshold against ``record`` and the last hour. Caller holds the lock."""
        t = self.thresholds
        raised: list[Alert] = []

        if record.latency_ms > t.max_latency_ms:
            raised.append(
                self._new_alert(
                    AlertType.WARNING,
                    "Slow response",
                    f"{record.endpoint} took {record.latency_ms / 1000:.1f}s "
                    f"(threshold: {t.max_latency_ms / 1000:g}s)",
                    now,
                    {"metric_id": record.id, "latency_ms": record.latency_ms},
                )
            )

        if not record.success:
            raised.append(
                self._new_alert(
                    AlertType.ERROR,
                    "Request failed",
                    f"{record.endpoint}: {record.error_message or aggregation.UNKNOWN_ERROR}",
                    now,
                    {"metric_id": record.id, "error": record.error_message},
                )
            )

        hour_start = now - HOURLY_WINDOW
        last_hour = [r for r in self._records if r.timestamp >= hour_start]

        hourly_cost = sum(r.estimated_cost for r in last_hour)
        if hourly_cost > t.max_cost_per_hour:
            raised.append(
                self._new_alert(
                    AlertType.WARNING,
                    "Hourly cost exceeded",
                    f"Cost over the last hour: ${hourly_cost:.2f} (threshold: ${t.max_cost_per_hour:.2f})",
                    now,
                    {"metric_id": record.id, "hourly_cost": hourly_cost},
                )
            )

        hourly_tokens = sum(r.tokens_used for r in last_hour)
        if hourly_tokens > t.max_tokens_per_hour:
            raised.append(
                self._new_alert(
                    AlertType.WARNING,
                    "Hourly token usage exceeded",
                    f"Tokens over the last hour: {hourly_tokens:,} (threshold: {t.max_tokens_per_hour:,})",
                    now,
                    {"metric_id": record.id, "hourly_tokens": hourly_tokens},
                )
            )

        hourly_errors = sum(1 for r in last_hour if not r.success)
        if hourly_errors > t.max_errors_per_hour:
            raised.append(
                self._new_alert(
                    AlertType.ERROR,
                    "Hourly error count exceeded",
                    f"Failed requests over the last hour: {hourly_errors} (threshold: {t.max_errors_per_hour})",
                    now,
                    {"metric_id": record.id, "hourly_errors": hourly_errors},
                )
            )

        if len(last_hour) >= t.success_rate_min_samples:
            rate = aggregation.success_rate(last_hour)
            if rate < t.min_success_rate:
                raised.append(
                    self._new_alert(
                        AlertType.WARNING,
                        "Success rate below threshold",
                        f"Success rate over the last hour: {rate:.1%} across {len(last_hour)} requests "
                        f"(threshold: {t.min_success_rate:.1%})",
                        now,
                        {"metric_id": record.id, "success_rate": rate},
                    )
                )

        self._alerts.extend(raised)
        return raised

    @staticmethod
    def _new_alert(
        alert_type: AlertType,
        title: str,
        message: str,
        now: datetime,
        metadata: dict[str, Any],
    ) -> Alert:
        return Alert(
            id=f"alert_{uuid4().hex[:12]}",
            type=alert_type,
            title=title,
            message=message,
            timestamp=now,
            metadata=metadata,
        )

    def add_alert(
        self,
        alert_type: AlertType,
        title: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> Alert:
        """Raise an alert from outside the threshold engine (e.g. the system sampler)."""
        with self._lock:
            alert = self._new_alert(alert_type, title, message, self._clock(), metadata or {})
            self._alerts.append(alert)
            self._set_gauges()

        ALERTS_TOTAL.labels(type=alert.type.value).inc()
        logger.log(_ALERT_LOG_LEVELS[alert.type], "ALERT %s: %s", alert.type.value.upper(), alert.message)
        return alert

    def resolve_alert(self, alert_id: str) -> bool:
        """Mark an alert resolved. Unknown or already-resolved ids are a no-op.

        Returns:
            True if an alert changed state.
        """
        with self._lock:
            alert = next((a for a in self._alerts if a.id == alert_id), None)
            if alert is None or alert.resolved:
                return False
            alert.resolved = True
            self._set_gauges()

        logger.info("Alert resolved: %s", alert.message)
        return True

    def resolve_all_alerts(self) -> int:
        """Resolve every unresolved alert. Returns how many were resolved."""
        with self._lock:
            resolved = 0
            for alert in self._alerts:
                if not alert.resolved:
                    alert.resolved = True
                    resolved += 1
            self._set_gauges()

        if resolved:
            logger.info("Resolved %d alerts", resolved)
        return resolved

    def get_alert(self, alert_id: str) -> Alert | None:
        """Copy of a single alert, or None if unknown or purged."""
        with self._lock:
            alert = next((a for a in self._alerts if a.id == alert_id), None)
            return alert.model_copy() if alert else None

    def get_active_alerts(self, limit: int = ACTIVE_ALERTS_LIMIT) -> list[Alert]:
        """Unresolved alerts, most recent first."""
        with self._lock:
            active = [a.model_copy() for a in self._alerts if not a.resolved]
        active.sort(key=lambda a: a.timestamp, reverse=True)
        return active[:limit]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, query: MetricQuery | None = None) -> list[MetricRecord]:
        """Filter retained records, newest first."""
        query = query or MetricQuery()
        with self._lock:
            records = list(self._records)

        if query.start_time is not None:
            records = [r for r in records if r.timestamp >= query.start_time]
        if query.end_time is not None:
            records = [r for r in records if r.timestamp <= query.end_time]
        if query.endpoint is not None:
            records = [r for r in records if r.endpoint == query.endpoint]
        if query.success is not None:
            records = [r for r in records if r.success == query.success]

        records.sort(key=lambda r: r.timestamp, reverse=True)
        if query.limit is not None:
            records = records[: query.limit]
        return records

    def latest_system_snapshot(self) -> SystemSnapshot | None:
        with self._lock:
            return self._system[-1] if self._system else None

    def snapshot(self) -> DashboardStats:
        """Compute the full dashboard view from a point-in-time copy."""
        with self._lock:
            now = self._clock()
            records = list(self._records)
            alerts = [a.model_copy() for a in self._alerts if not a.resolved]

        start_of_day = now.astimezone(self.tz).replace(hour=0, minute=0, second=0, microsecond=0)
        window_start = now - self.retention
        today = [r for r in records if r.timestamp >= start_of_day]
        last_window = [r for r in records if r.timestamp >= window_start]

        alerts.sort(key=lambda a: a.timestamp, reverse=True)

        return DashboardStats(
            today=aggregation.today_stats(today),
            hourly=aggregation.hourly_buckets(last_window, self.tz),
            model_usage=aggregation.model_usage(today),
            endpoint_stats=aggregation.endpoint_stats(today),
            rag_stats=aggregation.rag_stats(today),
            recent_errors=aggregation.recent_errors(records, RECENT_ERRORS_LIMIT),
            alerts=alerts[:ACTIVE_ALERTS_LIMIT],
        )
