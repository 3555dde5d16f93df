"""Dashboard aggregations over lists of metric records.

Pure functions: callers pass an already-filtered copy of the records, so
nothing here touches store state or locks. Every rate and mean is 0.0 on
empty input.
"""

from collections import defaultdict
from collections.abc import Sequence
from datetime import datetime, tzinfo

from src.observability.models import (
    EndpointStats,
    HourlyBucket,
    MetricRecord,
    ModelUsage,
    RagStats,
    RecentError,
    TodayStats,
)

RECENT_ERROR_INPUT_CHARS = 100
UNKNOWN_ERROR = "Unknown error"


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean, 0.0 for an empty sequence."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def success_rate(records: Sequence[MetricRecord]) -> float:
    """Fraction (0-1) of successful records, 0.0 when there are none."""
    if not records:
        return 0.0
    return sum(1 for r in records if r.success) / len(records)


def local_hour(timestamp: datetime, tz: tzinfo | None) -> int:
    """Hour-of-day of ``timestamp`` in ``tz`` (None = server local time)."""
    return timestamp.astimezone(tz).hour


def today_stats(records: Sequence[MetricRecord]) -> TodayStats:
    if not records:
        return TodayStats()

    return TodayStats(
        total_requests=len(records),
        success_rate=success_rate(records),
        avg_latency_ms=mean([r.latency_ms for r in records]),
        total_cost=sum(r.estimated_cost for r in records),
        total_tokens=sum(r.tokens_used for r in records),
    )


def hourly_buckets(records: Sequence[MetricRecord], tz: tzinfo | None) -> list[HourlyBucket]:
    """Group records into exactly 24 buckets by calendar hour-of-day.

    Buckets are keyed by the hour on the wall clock, not "hours ago", so two
    records 23 hours apart can share a bucket.
    """
    by_hour: dict[int, list[MetricRecord]] = {hour: [] for hour in range(24)}
    for record in records:
        by_hour[local_hour(record.timestamp, tz)].append(record)

    return [
        HourlyBucket(
            hour=hour,
            requests=len(bucket),
            success_rate=success_rate(bucket),
            avg_latency_ms=mean([r.latency_ms for r in bucket]),
            cost=sum(r.estimated_cost for r in bucket),
        )
        for hour, bucket in by_hour.items()
    ]


def model_usage(records: Sequence[MetricRecord]) -> list[ModelUsage]:
    counts: dict[str, int] = defaultdict(int)
    tokens: dict[str, int] = defaultdict(int)
    costs: dict[str, float] = defaultdict(float)

    for record in records:
        counts[record.model_used] += 1
        tokens[record.model_used] += record.tokens_used
        costs[record.model_used] += record.estimated_cost

    total = len(records)
    return [
        ModelUsage(
            model=model,
            count=count,
            tokens=tokens[model],
            cost=costs[model],
            percentage=(count / total) * 100 if total else 0.0,
        )
        for model, count in counts.items()
    ]


def endpoint_stats(records: Sequence[MetricRecord]) -> list[EndpointStats]:
    by_endpoint: dict[str, list[MetricRecord]] = defaultdict(list)
    for record in records:
        by_endpoint[record.endpoint].append(record)

    return [
        EndpointStats(
            endpoint=endpoint,
            count=len(group),
            avg_latency_ms=mean([r.latency_ms for r in group]),
            success_rate=success_rate(group),
            total_cost=sum(r.estimated_cost for r in group),
        )
        for endpoint, group in by_endpoint.items()
    ]


def rag_stats(records: Sequence[MetricRecord]) -> RagStats:
    """Retrieval statistics over the records that reported ``rag_searches``."""
    rag_records = [r for r in records if r.rag_searches is not None]
    if not rag_records:
        return RagStats()

    url_records = [r for r in rag_records if r.urls_verified is not None]
    total_verified = sum(r.urls_verified or 0 for r in url_records)

    return RagStats(
        utilization_rate=(len(rag_records) / len(records)) * 100,
        avg_searches_per_request=mean([r.rag_searches or 0 for r in rag_records]),
        avg_sources_found=mean([r.rag_sources or 0 for r in rag_records]),
        url_verification_rate=(total_verified / len(url_records)) * 100 if url_records else 0.0,
    )


def recent_errors(records: Sequence[MetricRecord], limit: int = 50) -> list[RecentError]:
    """Most recent failures first, reduced to what the dashboard displays."""
    failures = sorted((r for r in records if not r.success), key=lambda r: r.timestamp, reverse=True)
    return [
        RecentError(
            timestamp=r.timestamp,
            endpoint=r.endpoint,
            error=r.error_message or UNKNOWN_ERROR,
            user_input=r.user_input[:RECENT_ERROR_INPUT_CHARS] if r.user_input else r.user_input,
        )
        for r in failures[:limit]
    ]
