"""Unit tests for the per-request metrics collector."""

import logging
from typing import Any

import pytest

from src.observability.collector import (
    MetricsCollector,
    record_simple_error,
    record_simple_success,
    start_metrics,
)
from src.observability.metrics import estimate_cost
from src.observability.store import MetricsStore


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


@pytest.fixture
def ticker() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def collector(store: MetricsStore, ticker: FakeMonotonic) -> MetricsCollector:
    return MetricsCollector(
        store,
        "/api/agent-orchestrator",
        user_input="Explain photosynthesis",
        slow_request_ms=15_000,
        costly_request_usd=0.1,
        monotonic=ticker,
    )


class TestFinalization:
    def test_success_builds_and_ingests_record(
        self, collector: MetricsCollector, store: MetricsStore, ticker: FakeMonotonic
    ) -> None:
        collector.record_model("gpt-4o-mini", 1_200).record_approach("3-step", ["plan", "search", "write"])
        collector.record_rag(3, 12, urls_verified=9).record_results(5)
        ticker.value += 2.5

        record = collector.success()

        assert record is not None
        assert record.success is True
        assert record.latency_ms == pytest.approx(2_500)
        assert record.model_used == "gpt-4o-mini"
        assert record.estimated_cost == pytest.approx(estimate_cost("gpt-4o-mini", 1_200))
        assert record.stages_completed == ("plan", "search", "write")
        assert record.rag_searches == 3
        assert record.cards_generated == 5
        assert record.user_input == "Explain photosynthesis"
        assert store.record_count == 1

    def test_error_records_message(self, collector: MetricsCollector, store: MetricsStore) -> None:
        record = collector.error("Supabase unavailable")

        assert record is not None
        assert record.success is False
        assert record.error_message == "Supabase unavailable"
        assert store.snapshot().recent_errors[0].error == "Supabase unavailable"

    def test_second_finalization_is_ignored(
        self, collector: MetricsCollector, store: MetricsStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        collector.success()
        with caplog.at_level(logging.WARNING, logger="src.observability.collector"):
            assert collector.error("late failure") is None

        assert store.record_count == 1
        assert store.query()[0].success is True
        assert "already finished" in caplog.text

    def test_unfinished_collector_records_nothing(self, store: MetricsStore) -> None:
        MetricsCollector(store, "/api/test", slow_request_ms=1, costly_request_usd=1)
        assert store.record_count == 0

    def test_model_defaults_to_unknown(self, collector: MetricsCollector) -> None:
        record = collector.success()
        assert record is not None
        assert record.model_used == "unknown"
        assert record.tokens_used == 0
        assert record.estimated_cost == 0.0

    def test_negative_tokens_do_not_raise_into_caller(
        self, collector: MetricsCollector, store: MetricsStore
    ) -> None:
        record = collector.record_model("gpt-4o", -3).success()

        assert record is not None
        assert record.tokens_used == -3
        assert store.record_count == 1

    def test_recorders_overwrite(self, collector: MetricsCollector) -> None:
        collector.record_model("gpt-4o", 10).record_model("gpt-4o-mini", 20)
        record = collector.success()
        assert record is not None
        assert (record.model_used, record.tokens_used) == ("gpt-4o-mini", 20)

    def test_timestamp_is_collection_start(
        self, collector: MetricsCollector, clock: Any, ticker: FakeMonotonic
    ) -> None:
        started = clock.now
        clock.advance(seconds=30)
        ticker.value += 30
        record = collector.success()
        assert record is not None
        assert record.timestamp == started

    def test_id_derived_from_endpoint(self, collector: MetricsCollector) -> None:
        assert collector.id.startswith("api-agent-orchestrator_")


class TestSoftWarnings:
    def test_slow_success_logs_warning(
        self, collector: MetricsCollector, ticker: FakeMonotonic, caplog: pytest.LogCaptureFixture
    ) -> None:
        ticker.value += 16
        with caplog.at_level(logging.WARNING, logger="src.observability.collector"):
            collector.success()
        assert "Slow response" in caplog.text

    def test_costly_success_logs_warning(
        self, collector: MetricsCollector, caplog: pytest.LogCaptureFixture
    ) -> None:
        collector.record_model("gpt-4-turbo", 20_000)
        with caplog.at_level(logging.WARNING, logger="src.observability.collector"):
            collector.success()
        assert "Costly request" in caplog.text

    def test_slow_error_also_logs_slow_warning(
        self, collector: MetricsCollector, ticker: FakeMonotonic, caplog: pytest.LogCaptureFixture
    ) -> None:
        ticker.value += 20
        with caplog.at_level(logging.WARNING, logger="src.observability.collector"):
            collector.error("boom")
        assert "Slow response" in caplog.text

    def test_fast_cheap_request_logs_no_warning(
        self, collector: MetricsCollector, caplog: pytest.LogCaptureFixture
    ) -> None:
        collector.record_model("gpt-4o-mini", 100)
        with caplog.at_level(logging.WARNING, logger="src.observability.collector"):
            collector.success()
        assert "Slow response" not in caplog.text
        assert "Costly request" not in caplog.text

    @pytest.mark.usefixtures("mock_settings")
    def test_thresholds_default_to_settings(self, store: MetricsStore) -> None:
        collector = start_metrics(store, "/api/test")
        assert collector._slow_request_ms == 15_000
        assert collector._costly_request_usd == 0.1


class TestContextManager:
    def test_normal_exit_records_success(self, collector: MetricsCollector, store: MetricsStore) -> None:
        with collector as m:
            m.record_results(3)
        assert store.query()[0].success is True

    def test_exception_records_error_and_propagates(
        self, collector: MetricsCollector, store: MetricsStore
    ) -> None:
        with pytest.raises(RuntimeError, match="generation failed"), collector:
            raise RuntimeError("generation failed")

        record = store.query()[0]
        assert record.success is False
        assert record.error_message == "generation failed"

    def test_explicit_finish_inside_block_wins(self, collector: MetricsCollector, store: MetricsStore) -> None:
        with collector as m:
            m.error("handled upstream")
        assert store.record_count == 1
        assert store.query()[0].error_message == "handled upstream"


class TestSimpleHelpers:
    def test_record_simple_success(self, store: MetricsStore) -> None:
        record = record_simple_success(store, "/api/summary", 1_500, "gpt-4o", 400, cards_generated=2)
        assert record.success is True
        assert record.estimated_cost == pytest.approx(estimate_cost("gpt-4o", 400))
        assert store.record_count == 1

    def test_record_simple_error(self, store: MetricsStore) -> None:
        record = record_simple_error(store, "/api/summary", 800, "rate limited")
        assert record.model_used == "none"
        assert record.estimated_cost == 0.0
        assert len(store.get_active_alerts()) == 1
