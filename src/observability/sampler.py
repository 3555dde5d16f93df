"""APScheduler integration for periodic system snapshots.

Uses AsyncIOScheduler with IntervalTrigger to record process memory, CPU, open
live-stream sessions, and dependency availability into the metrics store.  In
development mode a second job injects a synthetic request record now and then
so the dashboard has something to show.
"""

import contextlib
import logging
import random

import psutil
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from src.config import get_settings
from src.observability.dashboard import InjectedMetricData, build_test_metric
from src.observability.models import SystemSnapshot
from src.observability.store import MetricsStore
from src.observability.stream import LiveStreamPublisher

logger = logging.getLogger(__name__)

DEMO_METRIC_INTERVAL_MINUTES = 5

_scheduler: AsyncIOScheduler | None = None


def collect_system_snapshot(store: MetricsStore, publisher: LiveStreamPublisher | None = None) -> SystemSnapshot:
    """Sample the current process and store the snapshot."""
    settings = get_settings()
    process = psutil.Process()
    memory_mb = round(process.memory_info().rss / 1024 / 1024, 1)

    snapshot = SystemSnapshot(
        timestamp=store.now(),
        memory_usage_mb=memory_mb,
        cpu_usage=process.cpu_percent(interval=None),
        active_connections=publisher.active_sessions if publisher is not None else 0,
        services=settings.service_status(),
    )
    store.ingest_system(snapshot)

    available = [name for name, ok in snapshot.services.items() if ok]
    logger.debug("System snapshot: %.1fMB, services up: %s", memory_mb, ", ".join(available) or "none")
    if memory_mb > settings.memory_warning_mb:
        logger.warning("High memory usage: %.1fMB", memory_mb)
    return snapshot


def _system_snapshot_job(store: MetricsStore, publisher: LiveStreamPublisher) -> None:
    try:
        collect_system_snapshot(store, publisher)
    except Exception:
        logger.exception("System snapshot collection failed")


def inject_demo_metric(store: MetricsStore, rng: random.Random | None = None) -> None:
    """Ingest a plausible synthetic record (development only)."""
    rng = rng or random.Random()
    if rng.random() <= 0.5:
        return

    if rng.random() < 0.5:
        data = InjectedMetricData(
            endpoint="/api/agent-followup",
            success=rng.random() > 0.05,
            latency=rng.uniform(2_000, 10_000),
            tokens=rng.randint(500, 2_000),
            model="gpt-4o" if rng.random() > 0.7 else "gpt-4o-mini",
            approach="2-step",
        )
    else:
        searches = rng.randint(1, 4)
        data = InjectedMetricData(
            endpoint="/api/agent-orchestrator",
            success=rng.random() > 0.1,
            latency=rng.uniform(5_000, 20_000),
            tokens=rng.randint(1_000, 4_000),
            model="mixed",
            approach="3-step",
            rag_searches=searches,
            rag_sources=searches * rng.randint(2, 6),
            urls_verified=rng.randint(0, searches * 3),
        )
    store.ingest(build_test_metric(store, data))
    logger.debug("Injected demo metric for %s", data.endpoint)


def _demo_metric_job(store: MetricsStore) -> None:
    try:
        inject_demo_metric(store)
    except Exception:
        logger.exception("Demo metric injection failed")


def start_sampler(store: MetricsStore, publisher: LiveStreamPublisher) -> None:
    """Start periodic system sampling (and demo metrics in development)."""
    global _scheduler  # noqa: PLW0603

    settings = get_settings()
    _scheduler = AsyncIOScheduler()
    _scheduler.add_job(
        _system_snapshot_job,
        trigger=IntervalTrigger(seconds=settings.system_snapshot_interval_seconds),
        args=[store, publisher],
        id="system_snapshot",
        name="System Snapshot",
        replace_existing=True,
    )
    if settings.environment == "development":
        _scheduler.add_job(
            _demo_metric_job,
            trigger=IntervalTrigger(minutes=DEMO_METRIC_INTERVAL_MINUTES),
            args=[store],
            id="demo_metric",
            name="Demo Metric",
            replace_existing=True,
        )
        logger.info("Demo metric injection enabled (every %d minutes)", DEMO_METRIC_INTERVAL_MINUTES)
    _scheduler.start()

    # First snapshot right away rather than after one interval
    _system_snapshot_job(store, publisher)
    logger.info("System sampler started (every %ds)", settings.system_snapshot_interval_seconds)


def stop_sampler() -> None:
    """Gracefully shut down the scheduler if it is running."""
    global _scheduler  # noqa: PLW0603

    if _scheduler is not None:
        with contextlib.suppress(Exception):
            _scheduler.shutdown(wait=False)
        logger.info("System sampler stopped")
        _scheduler = None
