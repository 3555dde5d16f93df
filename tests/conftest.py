"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import patch

import pytest

from src.config import Settings, get_settings
from src.observability.models import MetricRecord, ThresholdConfig
from src.observability.store import MetricsStore

# Midday so "today" comfortably contains the last few hours
NOW = datetime(2026, 3, 10, 14, 30, tzinfo=UTC)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that need a live server (TELEMETRY_URL)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local .env never leaks into tests.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Settings]:
    """Provide fixed settings so tests don't depend on the environment.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        environment="production",
        openai_api_key="sk-proj-test-fake",
        tavily_api_key="tvly-test-fake",
        supabase_url="",
        supabase_anon_key="",
        dashboard_password="s3cret",
        dashboard_timezone="UTC",
        system_snapshot_interval_seconds=3600,
    )
    with (
        patch("src.config.get_settings", return_value=fake_settings),
        patch("src.api.main.get_settings", return_value=fake_settings),
        patch("src.observability.collector.get_settings", return_value=fake_settings),
        patch("src.observability.sampler.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


class FakeClock:
    """Settable wall clock for stores under test."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MetricsStore:
    """Store with default thresholds, UTC day boundaries, and a fake clock."""
    return MetricsStore(ThresholdConfig(), tz=UTC, clock=clock)


@pytest.fixture
def make_record() -> Any:
    """Factory for MetricRecords with sensible defaults."""
    counter = 0

    def _make(
        timestamp: datetime = NOW,
        *,
        endpoint: str = "/api/agent-followup",
        latency_ms: float = 1_000.0,
        success: bool = True,
        **kwargs: Any,
    ) -> MetricRecord:
        nonlocal counter
        counter += 1
        fields: dict[str, Any] = {
            "id": f"rec_{counter}",
            "timestamp": timestamp,
            "endpoint": endpoint,
            "latency_ms": latency_ms,
            "success": success,
            "error_message": None if success else "boom",
            "tokens_used": 100,
            "model_used": "gpt-4o-mini",
            "estimated_cost": 0.001,
        }
        fields.update(kwargs)
        return MetricRecord(**fields)

    return _make
